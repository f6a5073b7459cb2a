"""
Root conftest.py for project-wide pytest configuration.

Registers the test markers, the ``--run-slow`` switch and an isolated
environment for every test session.
"""
from collections.abc import Iterator

import pytest

MARKERS = {
    "unit": "a fast test of a single component",
    "integration": "a test wiring several services or a real storage backend",
    "slow": "a test skipped unless --run-slow is given",
}


def pytest_configure(config: pytest.Config) -> None:
    """Register the custom markers."""
    for name, description in MARKERS.items():
        config.addinivalue_line("markers", f"{name}: {description}")


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command line options to pytest."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="run tests marked slow",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip slow tests unless --run-slow is provided."""
    if config.getoption("--run-slow"):
        return
    skip_slow = pytest.mark.skip(reason="needs --run-slow")
    for item in (i for i in items if "slow" in i.keywords):
        item.add_marker(skip_slow)


@pytest.fixture(scope="session", autouse=True)
def test_env() -> Iterator[None]:
    """Run the session without deployment settings leaking in from the shell."""
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv("MODELOPS_ENV", "test")
        mp.delenv("MODELOPS_DATABASE_URL", raising=False)
        mp.delenv("MODELOPS_CONFIG", raising=False)
        yield
