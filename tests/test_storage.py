import asyncio

import pytest
import pytest_asyncio

from adapters.sqlite_adapter import SQLiteAdapter
from adapters.storage_adapter import StorageAdapter
from authcore.config import AuthConfig
from authcore.storage import Storage
from authcore.storage_factory import create_storage
from authcore.user_service import StorageUserService


@pytest_asyncio.fixture
async def sqlite_storage(tmp_path):
    adapter = SQLiteAdapter(str(tmp_path / 'auth.db'))
    await adapter.initialize_schema()
    storage = Storage(adapter)
    yield storage
    await storage.close()


@pytest.mark.asyncio
async def test_storage_crud(memory_adapter):
    storage = Storage(memory_adapter)

    await storage.set('ns', 'k1', {'v': 1})
    got = await storage.get('ns', 'k1')
    assert got == {'v': 1}

    keys = await storage.list_keys('ns')
    assert 'k1' in keys

    deleted = await storage.delete('ns', 'k1')
    assert deleted is True
    assert await storage.delete('ns', 'k1') is False

    await storage.set('ns', 'k2', {'v': 2})
    await storage.clear_namespace('ns')
    keys = await storage.list_keys('ns')
    assert keys == []

    await storage.close()
    assert memory_adapter.closed is True


@pytest.mark.asyncio
async def test_memory_values_are_copied(storage):
    value = {'nested': {'a': 1}}
    await storage.set('ns', 'k', value)
    value['nested']['a'] = 2

    got = await storage.get('ns', 'k')
    assert got == {'nested': {'a': 1}}
    got['nested']['a'] = 3
    assert (await storage.get('ns', 'k')) == {'nested': {'a': 1}}


@pytest.mark.asyncio
async def test_set_if_absent(storage):
    assert await storage.set_if_absent('ns', 'k', {'v': 1}) is True
    assert await storage.set_if_absent('ns', 'k', {'v': 2}) is False
    assert await storage.get('ns', 'k') == {'v': 1}


@pytest.mark.asyncio
async def test_set_if_absent_concurrent_single_winner(storage):
    results = await asyncio.gather(*(storage.set_if_absent('ns', 'nonce', {'i': i}) for i in range(10)))
    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_validation(storage):
    with pytest.raises(ValueError):
        await storage.get('', 'k')
    with pytest.raises(ValueError):
        await storage.get('ns', '')
    with pytest.raises(TypeError):
        await storage.set('ns', 'k', ['not', 'a', 'dict'])


class DictAdapter(StorageAdapter):
    """Минимальный адаптер: только операции ключ-значение."""

    def __init__(self):
        self.data = {}

    async def get(self, namespace, key):
        return self.data.get((namespace, key))

    async def set(self, namespace, key, value):
        self.data[(namespace, key)] = value

    async def set_if_absent(self, namespace, key, value):
        return self.data.setdefault((namespace, key), value) is value

    async def delete(self, namespace, key):
        return self.data.pop((namespace, key), None) is not None

    async def list_keys(self, namespace):
        return [k for ns, k in self.data if ns == namespace]

    async def clear_namespace(self, namespace):
        for key in await self.list_keys(namespace):
            del self.data[(namespace, key)]

    async def close(self):
        self.data.clear()


@pytest.mark.asyncio
async def test_key_value_adapter_is_enough_for_user_service():
    users = StorageUserService(Storage(DictAdapter()))
    principal = await users.create('a@example.com')
    await users.update(principal.id, identifier='b@example.com')

    assert await users.find_by_identifier('a@example.com') is None
    assert (await users.find_by_identifier('b@example.com')).id == principal.id
    assert await users.mark_token_consumed('nonce', 1.0) is True
    assert await users.mark_token_consumed('nonce', 1.0) is False


@pytest.mark.asyncio
async def test_sqlite_crud(sqlite_storage):
    await sqlite_storage.set('auth_users', 'u1', {'identifier': 'a@example.com'})
    assert await sqlite_storage.get('auth_users', 'u1') == {'identifier': 'a@example.com'}
    assert await sqlite_storage.list_keys('auth_users') == ['u1']

    assert await sqlite_storage.set_if_absent('auth_users', 'u1', {'x': 1}) is False
    assert await sqlite_storage.set_if_absent('auth_users', 'u2', {'x': 1}) is True

    assert sorted(await sqlite_storage.list_keys('auth_users')) == ['u1', 'u2']

    assert await sqlite_storage.delete('auth_users', 'u1') is True
    assert await sqlite_storage.get('auth_users', 'u1') is None

    await sqlite_storage.clear_namespace('auth_users')
    assert await sqlite_storage.list_keys('auth_users') == []


@pytest.mark.asyncio
async def test_create_storage(tmp_path):
    memory = await create_storage(AuthConfig())
    await memory.set('ns', 'k', {'v': 1})
    await memory.close()

    sqlite = await create_storage(AuthConfig(storage_type='sqlite', db_path=str(tmp_path / 'x.db')))
    await sqlite.set('ns', 'k', {'v': 1})
    assert await sqlite.get('ns', 'k') == {'v': 1}
    await sqlite.close()
