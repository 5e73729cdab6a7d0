import pytest

from macos_app_installer import InstallDecision, decideInstall
from tests.fakes import JAN_1, JAN_2


@pytest.mark.parametrize("persisted", [None, JAN_1, JAN_2])
def test_not_installed_always_installs(persisted):
    assert decideInstall(False, persisted, JAN_1) == InstallDecision.NOT_INSTALLED


def test_no_recorded_indicator_needs_update():
    assert decideInstall(True, None, JAN_1) == InstallDecision.NEEDS_UPDATE


def test_matching_indicator_is_up_to_date():
    assert decideInstall(True, JAN_1, JAN_1) == InstallDecision.UP_TO_DATE


def test_changed_indicator_needs_update():
    assert decideInstall(True, JAN_1, JAN_2) == InstallDecision.NEEDS_UPDATE


@pytest.mark.parametrize(
    "persisted",
    [f" {JAN_1}", f"{JAN_1} ", JAN_1.lower(), ""],
)
def test_formatting_drift_is_never_up_to_date(persisted):
    assert decideInstall(True, persisted, JAN_1) == InstallDecision.NEEDS_UPDATE
