from __future__ import annotations

import logging
import os

import pytest

from flare.defaults import DefaultsConfig


@pytest.fixture
def defaults(tmp_path) -> DefaultsConfig:
    """Defaults pointing every path into the test's tmp dir."""
    return DefaultsConfig(
        uid=os.getuid(),
        gid=os.getgid(),
        username="tester",
        home=str(tmp_path / "home"),
        workdir=str(tmp_path / "work"),
        output=str(tmp_path / "out.tar.gz"),
    )


@pytest.fixture(autouse=True)
def _reset_flare_logging():
    # the CLI installs its own handlers on the "flare" logger
    yield
    logger = logging.getLogger("flare")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
