import asyncio
import os

from alembic import command
from alembic.config import Config
from sqlalchemy.engine.url import make_url

from cubestream.config import Config as CubestreamConfig
from cubestream.models import Base


async def run_migrations(cubestream_config: CubestreamConfig):
    url = make_url(cubestream_config.DATABASE_URL)
    if url.drivername.startswith("sqlite"):
        # local runs and tests: no migration history, build the schema directly
        async with cubestream_config.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return
    if not url.drivername.startswith("postgresql"):
        raise ValueError(f"Unsupported database dialect: {url.drivername}")

    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../"))
    alembic_ini_path = os.path.join(base_dir, "alembic.ini")

    alembic_cfg = Config(alembic_ini_path)
    script_location = os.path.join(base_dir, "src", "cubestream", "alembic")
    alembic_cfg.set_main_option("script_location", script_location)
    alembic_cfg.set_main_option("sqlalchemy.url", cubestream_config.DATABASE_URL)

    await asyncio.to_thread(command.upgrade, alembic_cfg, "head")
