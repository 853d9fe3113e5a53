from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from portfolio_agent.services.redis import RedisCrudService, get_redis_crud_service


@pytest.fixture
def mock_redis() -> MagicMock:
    """Mock Redis client with async methods."""
    m = MagicMock()
    m.delete = AsyncMock(return_value=1)
    m.exists = AsyncMock(return_value=0)
    m.lrange = AsyncMock(return_value=[])
    m.hgetall = AsyncMock(return_value={})
    m.ping = AsyncMock(return_value=True)
    m.aclose = AsyncMock(return_value=None)
    return m


@pytest.fixture
def mock_pipeline(mock_redis: MagicMock) -> MagicMock:
    """Pipeline usable as `async with`, buffering commands until execute()."""
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    mock_redis.pipeline = MagicMock(return_value=pipe)
    return pipe


@pytest.mark.asyncio
async def test_redis_crud_connect_pings(mock_redis: MagicMock) -> None:
    """connect builds the client from the URL and pings it once."""
    with patch("portfolio_agent.services.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = mock_redis
        svc = RedisCrudService("redis://localhost:6379/0")
        await svc.connect()
        await svc.connect()
        redis_cls.from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)
        mock_redis.ping.assert_awaited_once()
        assert svc.client is mock_redis


@pytest.mark.asyncio
async def test_redis_crud_connect_failure_resets_client(mock_redis: MagicMock) -> None:
    """A failed ping closes the client and re-raises."""
    mock_redis.ping.side_effect = RedisConnectionError("refused")
    with patch("portfolio_agent.services.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = mock_redis
        svc = RedisCrudService("redis://localhost:6379/0")
        with pytest.raises(RedisConnectionError):
            await svc.connect()
        mock_redis.aclose.assert_awaited_once()
        assert svc.client is None


@pytest.mark.asyncio
async def test_redis_crud_delete_many(mock_redis: MagicMock) -> None:
    """delete passes every key to Redis in one call."""
    svc = RedisCrudService("redis://localhost:6379/0")
    svc._client = mock_redis
    assert await svc.delete("a", "b") is True
    mock_redis.delete.assert_called_once_with("a", "b")


@pytest.mark.asyncio
async def test_redis_crud_lrange(mock_redis: MagicMock) -> None:
    """lrange forwards the bounds and returns strings."""
    mock_redis.lrange.return_value = ["x", "y"]
    svc = RedisCrudService("redis://localhost:6379/0")
    svc._client = mock_redis
    assert await svc.lrange("list", -2, -1) == ["x", "y"]
    mock_redis.lrange.assert_called_once_with("list", -2, -1)


@pytest.mark.asyncio
async def test_redis_crud_lrange_error_reads_empty(mock_redis: MagicMock) -> None:
    """Connection errors on reads are logged and read as empty."""
    mock_redis.lrange.side_effect = RedisConnectionError("gone")
    mock_redis.hgetall.side_effect = RedisConnectionError("gone")
    svc = RedisCrudService("redis://localhost:6379/0")
    svc._client = mock_redis
    assert await svc.lrange("list", 0, -1) == []
    assert await svc.hgetall("hash") == {}


@pytest.mark.asyncio
async def test_redis_crud_transaction_queues_commands(
    mock_redis: MagicMock, mock_pipeline: MagicMock
) -> None:
    """transaction opens a MULTI pipeline, queues each command and executes once."""
    svc = RedisCrudService("redis://localhost:6379/0")
    svc._client = mock_redis
    replies = await svc.transaction([("rpush", ("k", "a", "b")), ("expire", ("k", 60))])
    assert replies == [1, 1]
    mock_redis.pipeline.assert_called_once_with(transaction=True)
    mock_pipeline.rpush.assert_called_once_with("k", "a", "b")
    mock_pipeline.expire.assert_called_once_with("k", 60)
    mock_pipeline.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_crud_transaction_failure_returns_none(
    mock_redis: MagicMock, mock_pipeline: MagicMock
) -> None:
    mock_pipeline.execute.side_effect = RedisConnectionError("gone")
    svc = RedisCrudService("redis://localhost:6379/0")
    svc._client = mock_redis
    assert await svc.transaction([("rpush", ("k", "a"))]) is None


@pytest.mark.asyncio
async def test_redis_crud_when_not_connected() -> None:
    """Reads are empty and writes fail when client is None."""
    svc = RedisCrudService("redis://localhost:6379/0")
    assert svc.client is None
    assert await svc.lrange("any", 0, -1) == []
    assert await svc.delete("k") is False
    assert await svc.transaction([("rpush", ("k", "v"))]) is None


def test_get_redis_crud_service_returns_none_when_no_url() -> None:
    """get_redis_crud_service returns None when redis_url is not set."""
    with patch("portfolio_agent.services.redis.get_settings") as get_settings:
        get_settings.return_value = MagicMock(redis_url=None)
        assert get_redis_crud_service() is None
        get_settings.return_value = MagicMock(redis_url="  ")
        assert get_redis_crud_service() is None


def test_get_redis_crud_service_returns_instance_when_url_set() -> None:
    with patch("portfolio_agent.services.redis.get_settings") as get_settings:
        get_settings.return_value = MagicMock(redis_url="redis://localhost:6379/0")
        assert isinstance(get_redis_crud_service(), RedisCrudService)
