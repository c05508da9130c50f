import io
import sys
import pathlib

import pytest
import pytest_asyncio

# Ensure repository root is on sys.path so packages (authcore, adapters, plugins) import correctly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from adapters.memory_adapter import MemoryAdapter
from authcore.config import AuthConfig
from authcore.engine import AuthEngine
from authcore.logger import AuthLogger
from authcore.storage import Storage
from plugins.password.plugin import PasswordPlugin

# bcrypt cost для тестов
FAST_ROUNDS = 4
STRONG_PASSWORD = 'Correct-Horse-9'


class FakeClock:
    """Управляемые часы: вызывается как time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def log_stream():
    return io.StringIO()


@pytest.fixture
def logger(log_stream):
    return AuthLogger(level='DEBUG', log_format='text', stream=log_stream)


@pytest.fixture
def memory_adapter():
    return MemoryAdapter()


@pytest.fixture
def storage(memory_adapter):
    return Storage(memory_adapter)


@pytest.fixture
def config():
    # Кэш проверок выключен, чтобы отзыв сессии был виден сразу
    return AuthConfig(verification_cache_ttl=0)


@pytest_asyncio.fixture
async def engine(config, storage, clock, logger):
    engine = AuthEngine(config, storage=storage, logger=logger, clock=clock)
    await engine.register_plugin(PasswordPlugin(bcrypt_rounds=FAST_ROUNDS))
    await engine.start()
    yield engine
    await engine.stop()


@pytest_asyncio.fixture
async def alice(engine):
    return await engine.register(
        'password', {'email': 'alice@example.com', 'password': STRONG_PASSWORD}, client_id='10.0.0.1'
    )
