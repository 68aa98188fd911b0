import os
from typing import Any, TypeAlias

from boto3 import Session
from obstore.auth.boto3 import Boto3CredentialProvider
from obstore.store import (
    AzureStore,
    GCSStore,
    HTTPStore,
    LocalStore,
    MemoryStore,
    S3Store,
)
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

ObjectStore: TypeAlias = (
    AzureStore | GCSStore | HTTPStore | S3Store | LocalStore | MemoryStore
)

PARTITION_CHANGE_POLICIES = ("strict", "allow_added")
RETENTION_GAP_POLICIES = ("fail", "skip")


def _optional_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


class Config:
    def __init__(self):
        # db
        self.DATABASE_URL = os.getenv(
            "CUBESTREAM_DATABASE_URL", "sqlite+aiosqlite:///:memory:"
        )
        self.DATABASE_ECHO = os.getenv("CUBESTREAM_DATABASE_ECHO", "false").lower() == "true"
        self.async_session_factory: async_sessionmaker[AsyncSession] | None = None
        self.engine = None

        # obj store (staging tables)
        self.OBJECT_STORE_PROVIDER = os.getenv(
            "CUBESTREAM_OBJECT_STORE_PROVIDER", "memory"
        )
        self.STAGING_BUCKET = os.getenv("CUBESTREAM_STAGING_BUCKET", "cubestream-staging")
        self.STAGING_BUCKET_PREFIX = os.getenv("CUBESTREAM_STAGING_BUCKET_PREFIX", "")
        self.STAGING_LOCAL_PATH = os.getenv("CUBESTREAM_STAGING_LOCAL_PATH", "/tmp/cubestream")
        self.STAGING_PREFIX = os.getenv("CUBESTREAM_STAGING_PREFIX", "jobs")
        self.S3_ENDPOINT_URL = os.getenv("CUBESTREAM_S3_ENDPOINT_URL")
        self.REGION = os.getenv("CUBESTREAM_REGION", "us-east-1")
        self.store: ObjectStore = MemoryStore()

        # source reads
        self.SOURCE_READ_TIMEOUT_MS = int(os.getenv("CUBESTREAM_SOURCE_READ_TIMEOUT_MS", 30_000))
        self.SOURCE_FETCH_MAX_RECORDS = int(os.getenv("CUBESTREAM_SOURCE_FETCH_MAX_RECORDS", 500))

        # materialization
        self.MATERIALIZE_CONCURRENCY = int(os.getenv("CUBESTREAM_MATERIALIZE_CONCURRENCY", 4))
        # fraction of rejected messages tolerated per step, unset means no ceiling
        self.MAX_REJECTION_RATE = _optional_float("CUBESTREAM_MAX_REJECTION_RATE")
        self.PARQUET_COMPRESSION = os.getenv("CUBESTREAM_PARQUET_COMPRESSION", "zstd")

        # segment lifecycle policies
        self.PARTITION_CHANGE_POLICY = os.getenv("CUBESTREAM_PARTITION_CHANGE_POLICY", "strict")
        # what to do when retention dropped offsets a segment should start from
        self.RETENTION_GAP_POLICY = os.getenv("CUBESTREAM_RETENTION_GAP_POLICY", "fail")
        self.ALLOW_EMPTY_SEGMENTS = os.getenv("CUBESTREAM_ALLOW_EMPTY_SEGMENTS", "false").lower() == "true"

        self.validate()
        self.create_engine()
        self.create_store()

    def validate(self):
        if self.PARTITION_CHANGE_POLICY not in PARTITION_CHANGE_POLICIES:
            raise ValueError(
                f"Unsupported partition change policy: {self.PARTITION_CHANGE_POLICY}"
            )
        if self.RETENTION_GAP_POLICY not in RETENTION_GAP_POLICIES:
            raise ValueError(
                f"Unsupported retention gap policy: {self.RETENTION_GAP_POLICY}"
            )
        if self.MAX_REJECTION_RATE is not None and not 0.0 <= self.MAX_REJECTION_RATE <= 1.0:
            raise ValueError("CUBESTREAM_MAX_REJECTION_RATE must be within [0, 1]")
        if self.MATERIALIZE_CONCURRENCY < 1:
            raise ValueError("CUBESTREAM_MATERIALIZE_CONCURRENCY must be at least 1")

    def create_engine(self):
        url = make_url(self.DATABASE_URL)

        engine_options: dict[str, Any] = {
            "echo": self.DATABASE_ECHO,
            "future": True,
        }

        if url.drivername.startswith("sqlite"):
            # Assign separately to keep type checkers happy
            engine_options["connect_args"] = {"check_same_thread": False}
            engine_options["poolclass"] = StaticPool

        elif url.drivername.startswith("postgresql"):
            if not url.drivername.startswith("postgresql+asyncpg"):
                url = url.set(drivername="postgresql+asyncpg")
        else:
            raise ValueError(f"Unsupported database dialect: {url.drivername}")

        self.engine = create_async_engine(url, **engine_options)
        self.async_session_factory = async_sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    def create_store(self):
        bucket_path = self.STAGING_BUCKET + self.STAGING_BUCKET_PREFIX
        region = self._get_region()
        endpoint = self._get_endpoint()
        if self.OBJECT_STORE_PROVIDER == "aws":
            store_kwargs: dict[str, Any] = {"region": region}
            if endpoint is not None:
                store_kwargs["endpoint"] = endpoint
            # if any env var starts with AWS_, assume that we should get credentials that way
            if not any(key.startswith("AWS_") for key in os.environ):
                session = Session()
                credential_provider = Boto3CredentialProvider(session)
                store_kwargs["credential_provider"] = credential_provider
            self.store = S3Store(bucket_path, **store_kwargs)
        elif self.OBJECT_STORE_PROVIDER == "local":
            self.store = LocalStore(self.STAGING_LOCAL_PATH, mkdir=True)
        elif self.OBJECT_STORE_PROVIDER != "memory":
            raise ValueError(f"Unsupported object store provider: {self.OBJECT_STORE_PROVIDER}")

    def _get_region(self):
        return os.getenv("AWS_DEFAULT_REGION") or os.getenv("AWS_REGION") or self.REGION

    def _get_endpoint(self):
        return (
            os.getenv("AWS_ENDPOINT")
            or os.getenv("AWS_ENDPOINT_URL")
            or self.S3_ENDPOINT_URL
        )
