"""Step that turns the server's storage into templates, optionally in several zones."""

from _common import CLONE_TITLE_PREFIX, CloneNotReady, DriverError, now_string
from build_config import Config
from steps import BuildState, Step, StepAction, halt


class StepCreateTemplate(Step):
    def __init__(self, config: Config):
        self.config = config

    def template_title(self) -> str:
        """Title shared by every template of this build."""
        if self.config.template_prefix:
            return f"{self.config.template_prefix}-{now_string()}"
        return self.config.template_name

    def run(self, state: BuildState) -> StepAction:
        ui = state.ui
        driver = state.driver

        try:
            storage = driver.get_server_storage(state.server_uuid)
        except DriverError as e:
            return halt(state, e)

        # Recorded as we go so that clones made before a failure still get
        # deleted. The source storage is not ours and never goes in here.
        cleanup_uuids: list[str] = []
        state.cleanup_storage_uuids = cleanup_uuids
        storage_uuids = [storage.uuid]

        for zone in self.config.clone_zones:
            ui.say(f"Cloning storage {storage.uuid!r} to zone {zone!r}...")
            title = f"{CLONE_TITLE_PREFIX}-{now_string()}-cloned-disk1"
            try:
                cloned = driver.clone_storage(storage.uuid, zone, title)
            except CloneNotReady as e:
                cleanup_uuids.append(e.storage_uuid)
                return halt(state, e)
            except DriverError as e:
                return halt(state, e)
            storage_uuids.append(cloned.uuid)
            cleanup_uuids.append(cloned.uuid)
        if self.config.clone_zones:
            ui.say("Cloning completed...")

        templates = []
        state.templates = templates
        title = self.template_title()

        for uuid in storage_uuids:
            ui.say(f"Creating template for storage {uuid!r}...")
            try:
                template = driver.create_template(uuid, title)
            except DriverError as e:
                return halt(state, e)
            templates.append(template)
            ui.say(f"Template for storage {uuid!r} created...")

        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        """Delete the cloned storages; failures are reported, never raised."""
        storage_uuids = state.cleanup_storage_uuids
        if storage_uuids is None:
            return

        for uuid in storage_uuids:
            state.ui.say(f"Deleting storage {uuid!r}...")
            try:
                state.driver.delete_template(uuid)
            except Exception as e:
                state.ui.error(str(e))
        state.cleanup_storage_uuids = None
