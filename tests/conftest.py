import sys
from pathlib import Path

import pytest

SCRIPTS_DIR = str(Path(__file__).resolve().parent.parent / "scripts")


@pytest.fixture()
def scripts_on_path():
    """Temporarily add scripts/ to sys.path for module imports."""
    sys.path.insert(0, SCRIPTS_DIR)
    yield
    sys.path.remove(SCRIPTS_DIR)


@pytest.fixture()
def fake_driver():
    from fakes import FakeDriver

    return FakeDriver()


@pytest.fixture()
def recording_ui():
    from fakes import RecordingUi

    return RecordingUi()
