"""
Pydantic-валидация payload'ов провайдеров.

Провайдеры описывают свои учётные данные моделями pydantic и разбирают
входной dict через parse_payload() до любой работы с хранилищем.
"""

from typing import Any, Type, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class CredentialsModel(BaseModel):
    """База для моделей учётных данных: лишние поля отбрасываются."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def parse_payload(model: Type[ModelT], payload: Any) -> ModelT:
    """
    Провалидировать payload моделью.

    Raises:
        ValidationError: payload не dict или не проходит валидацию
    """
    if not isinstance(payload, dict):
        raise ValidationError("invalid_body")
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
        raise ValidationError(f"Invalid payload: {', '.join(fields) or 'body'}", fields=fields) from e
