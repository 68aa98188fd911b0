import pytest

from cubestream.logger import configure_logging


@pytest.fixture(scope="session", autouse=True)
def quiet_logging():
    configure_logging("WARNING")
