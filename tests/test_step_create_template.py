"""Tests for the template creation step (cloning, templating, cleanup)."""

import re

import pytest

from fakes import FakeDriver, RecordingUi

TITLE_RE = re.compile(r"^img-\d{8}-\d{6}(-\d+)?$")


def _config(**overrides):
    from build_config import Config

    values = {
        "username": "user",
        "password": "pass",
        "zone": "fi-hel1",
        "storage_uuid": "tmpl-ubuntu",
        "template_prefix": "img",
    }
    values.update(overrides)
    return Config(**values)


def _state(driver, ui=None):
    from steps import BuildState

    return BuildState(server_uuid="server-1", ui=ui or RecordingUi(), driver=driver)


# ── Forward action ─────────────────────────────────────────


@pytest.mark.usefixtures("scripts_on_path")
class TestRun:
    def test_no_clone_zones_creates_single_template(self, fake_driver):
        from step_create_template import StepCreateTemplate
        from steps import StepAction

        state = _state(fake_driver)
        action = StepCreateTemplate(_config()).run(state)

        assert action is StepAction.CONTINUE
        assert [t.uuid for t in state.templates] == ["tmpl-storage-orig"]
        assert state.cleanup_storage_uuids == []
        assert fake_driver.clones == []

    def test_two_zones_scenario(self, fake_driver):
        from step_create_template import StepCreateTemplate
        from steps import StepAction

        state = _state(fake_driver)
        step = StepCreateTemplate(_config(clone_zones=["de-fra1", "uk-lon1"]))
        action = step.run(state)

        assert action is StepAction.CONTINUE
        assert len(state.templates) == 3
        titles = {t.title for t in state.templates}
        assert len(titles) == 1
        assert TITLE_RE.match(titles.pop())
        assert state.cleanup_storage_uuids == ["clone-de-fra1", "clone-uk-lon1"]
        assert "storage-orig" not in state.cleanup_storage_uuids

    def test_templates_follow_storage_order(self, fake_driver):
        from step_create_template import StepCreateTemplate

        state = _state(fake_driver)
        StepCreateTemplate(_config(clone_zones=["de-fra1", "uk-lon1"])).run(state)

        templated = [c[1] for c in fake_driver.calls if c[0] == "create_template"]
        assert templated == ["storage-orig", "clone-de-fra1", "clone-uk-lon1"]

    def test_clones_use_distinct_titles(self, fake_driver):
        from step_create_template import StepCreateTemplate

        state = _state(fake_driver)
        StepCreateTemplate(_config(clone_zones=["de-fra1", "uk-lon1", "nl-ams1"])).run(state)

        titles = [c.title for c in fake_driver.clones]
        assert len(set(titles)) == 3
        assert all(t.startswith("packer-") and t.endswith("-cloned-disk1") for t in titles)

    def test_fixed_template_name_used_verbatim(self, fake_driver):
        from step_create_template import StepCreateTemplate

        state = _state(fake_driver)
        config = _config(template_prefix="", template_name="golden", clone_zones=["de-fra1"])
        StepCreateTemplate(config).run(state)

        assert [t.title for t in state.templates] == ["golden", "golden"]

    def test_storage_lookup_failure_halts_without_cleanup_record(self):
        from step_create_template import StepCreateTemplate
        from steps import StepAction

        driver = FakeDriver(fail_storage=True)
        ui = RecordingUi()
        state = _state(driver, ui)
        action = StepCreateTemplate(_config(clone_zones=["de-fra1"])).run(state)

        assert action is StepAction.HALT
        assert state.cleanup_storage_uuids is None
        assert state.templates is None
        assert "not found" in str(state.error)
        assert ui.errors

    @pytest.mark.parametrize("failing", [1, 2, 3])
    def test_clone_failure_keeps_earlier_clones_for_cleanup(self, failing):
        from step_create_template import StepCreateTemplate
        from steps import StepAction

        zones = ["de-fra1", "uk-lon1", "nl-ams1"]
        driver = FakeDriver(fail_clone_at=failing)
        state = _state(driver)
        action = StepCreateTemplate(_config(clone_zones=zones)).run(state)

        assert action is StepAction.HALT
        assert state.cleanup_storage_uuids == [f"clone-{z}" for z in zones[:failing - 1]]
        assert driver.templates == []
        assert not state.templates
        # Nothing is attempted after the failing clone
        clone_calls = [c for c in driver.calls if c[0] == "clone_storage"]
        assert len(clone_calls) == failing

    def test_unsettled_clone_is_recorded_for_cleanup(self):
        from step_create_template import StepCreateTemplate
        from steps import StepAction

        driver = FakeDriver(unsettled_clone_at=2)
        state = _state(driver)
        action = StepCreateTemplate(_config(clone_zones=["de-fra1", "uk-lon1", "nl-ams1"])).run(state)

        assert action is StepAction.HALT
        assert state.cleanup_storage_uuids == ["clone-de-fra1", "clone-uk-lon1"]
        assert driver.templates == []
        clone_calls = [c for c in driver.calls if c[0] == "clone_storage"]
        assert len(clone_calls) == 2

    def test_template_failure_halts_after_partial_templates(self):
        from step_create_template import StepCreateTemplate
        from steps import StepAction

        driver = FakeDriver(fail_template_at=2)
        state = _state(driver)
        action = StepCreateTemplate(_config(clone_zones=["de-fra1", "uk-lon1"])).run(state)

        assert action is StepAction.HALT
        assert [t.uuid for t in state.templates] == ["tmpl-storage-orig"]
        assert state.cleanup_storage_uuids == ["clone-de-fra1", "clone-uk-lon1"]
        template_calls = [c for c in driver.calls if c[0] == "create_template"]
        assert len(template_calls) == 2

    def test_narrates_progress(self, fake_driver, recording_ui):
        from step_create_template import StepCreateTemplate

        state = _state(fake_driver, recording_ui)
        StepCreateTemplate(_config(clone_zones=["de-fra1"])).run(state)

        assert recording_ui.lines[0] == "Cloning storage 'storage-orig' to zone 'de-fra1'..."
        assert "Cloning completed..." in recording_ui.lines
        assert "Template for storage 'clone-de-fra1' created..." in recording_ui.lines


# ── Cleanup ────────────────────────────────────────────────


@pytest.mark.usefixtures("scripts_on_path")
class TestCleanup:
    def test_noop_without_record(self, fake_driver, recording_ui):
        from step_create_template import StepCreateTemplate

        state = _state(fake_driver, recording_ui)
        StepCreateTemplate(_config()).cleanup(state)

        assert fake_driver.calls == []
        assert recording_ui.errors == []

    def test_deletes_recorded_clones_in_order(self, fake_driver):
        from step_create_template import StepCreateTemplate

        state = _state(fake_driver)
        step = StepCreateTemplate(_config(clone_zones=["de-fra1", "uk-lon1"]))
        step.run(state)
        step.cleanup(state)

        assert fake_driver.deleted == ["clone-de-fra1", "clone-uk-lon1"]
        assert "storage-orig" not in fake_driver.deleted
        assert state.cleanup_storage_uuids is None

    def test_continues_after_delete_failure(self, recording_ui):
        from step_create_template import StepCreateTemplate

        driver = FakeDriver(fail_delete={"a"})
        state = _state(driver, recording_ui)
        state.cleanup_storage_uuids = ["a", "b", "c"]

        StepCreateTemplate(_config()).cleanup(state)  # must not raise

        assert [c[1] for c in driver.calls] == ["a", "b", "c"]
        assert driver.deleted == ["b", "c"]
        assert len(recording_ui.errors) == 1
        assert "'a'" in recording_ui.errors[0]

    def test_swallows_unexpected_errors(self, recording_ui):
        from step_create_template import StepCreateTemplate

        class Broken(FakeDriver):
            def delete_template(self, storage_uuid):
                raise RuntimeError("connection reset")

        state = _state(Broken(), recording_ui)
        state.cleanup_storage_uuids = ["a", "b"]
        StepCreateTemplate(_config()).cleanup(state)

        assert recording_ui.errors == ["connection reset", "connection reset"]
