import pytest

from cubestream.config import Config
from cubestream.db import run_migrations
from cubestream.input import StreamingInput
from cubestream.metadata import SegmentMetadataStore
from tests.utils.seed import SOURCE_ID, order_source
from tests.utils.source import FakeSourceClient


@pytest.fixture
async def config(monkeypatch):
    monkeypatch.setenv("CUBESTREAM_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("CUBESTREAM_OBJECT_STORE_PROVIDER", "memory")
    config = Config()
    await run_migrations(config)
    yield config
    await config.engine.dispose()


@pytest.fixture
def metadata(config):
    return SegmentMetadataStore(config)


@pytest.fixture
def source_client():
    return FakeSourceClient(partitions=1)


@pytest.fixture
def client_factory(source_client):
    return lambda source: source_client


@pytest.fixture
async def orders_source(metadata):
    source = order_source()
    await metadata.register_source(source)
    return source


@pytest.fixture
def streaming(config, metadata, client_factory):
    return StreamingInput(config, metadata, client_factory)


@pytest.fixture
def segment_factory(metadata, orders_source):
    async def _create(cube_name: str = "orders_cube", **kwargs) -> str:
        return await metadata.create_segment(cube_name, SOURCE_ID, **kwargs)

    return _create
