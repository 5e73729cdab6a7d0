import logging
import signal

import pytest

from macos_app_installer import InstallerConfig, StepFilter


@pytest.fixture
def config(tmp_path):
    return InstallerConfig(
        appPath=tmp_path / "Applications" / "zoom.us.app",
        metaDir=tmp_path / "meta",
        waitInterval=0,
        retries=3,
        retryDelay=0,
        checkRosetta=False,
    )


@pytest.fixture
def restoreRootLogger():
    """Removes the handlers configureLogging installs on the root logger."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if any(isinstance(f, StepFilter) for f in handler.filters):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    logging.getLogger("urllib3").setLevel(logging.NOTSET)


@pytest.fixture
def restoreSignalHandlers():
    """Puts back the SIGTERM/SIGINT handlers installSignalHandlers replaces."""
    saved = {signum: signal.getsignal(signum) for signum in (signal.SIGTERM, signal.SIGINT)}
    yield
    for signum, handler in saved.items():
        signal.signal(signum, handler)
