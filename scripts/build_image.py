#!/usr/bin/env python3
"""Turn a running UpCloud server's disk into reusable storage templates.

Reads API credentials from the environment or .env, stage settings from an
optional JSON file, stops the server, clones its storage into every
``clone_zones`` entry and creates one template per storage. Intermediate
clones are deleted when the build ends.

Usage:
    python3 scripts/build_image.py <server-uuid> [config.json]
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
from _common import BuildError, ConfigError, Ui, env_lookup, setup_logging  # noqa: E402
from build_config import load_config_file, prepare_config  # noqa: E402
from driver import Template, UpCloudDriver  # noqa: E402
from step_create_template import StepCreateTemplate  # noqa: E402
from steps import BuildState, StepStopServer, run_steps  # noqa: E402

USAGE = "usage: build_image.py <server-uuid> [config.json]"


def describe_templates(templates: list[Template]) -> str:
    """Human-readable summary of the templates a build produced."""
    if not templates:
        return "No templates were created."
    lines = ["Storage template(s) created:"]
    for t in templates:
        zone = f" [{t.zone}]" if t.zone else ""
        lines.append(f"  UUID: {t.uuid}, Title: {t.title}{zone}")
    return "\n".join(lines)


def main(argv: list[str] | None = None):
    args = sys.argv[1:] if argv is None else argv
    if not args or len(args) > 2 or args[0] in ("-h", "--help"):
        print(USAGE, file=sys.stderr)
        sys.exit(2)
    server_uuid = args[0]

    root = Path.cwd()
    setup_logging()

    try:
        print("[1/3] Loading configuration...")
        raw = load_config_file(Path(args[1])) if len(args) > 1 else {}
        config = prepare_config(raw, getenv=env_lookup(root))
    except ConfigError as e:
        print("ERROR: invalid configuration:", file=sys.stderr)
        for err in e.errors:
            print(f"  • {err}", file=sys.stderr)
        sys.exit(1)

    ui = Ui()
    driver = UpCloudDriver(config.username, config.password, timeout=config.state_timeout_duration)
    state = BuildState(server_uuid=server_uuid, ui=ui, driver=driver)

    print(f"[2/3] Building templates from server {server_uuid}...")
    try:
        error = run_steps([StepStopServer(), StepCreateTemplate(config)], state)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(1)

    print("[3/3] Summary")
    print(describe_templates(state.templates or []))
    if error is not None:
        print(f"\nERROR: build failed: {error}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    try:
        main()
    except BuildError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
