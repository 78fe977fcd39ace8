from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .core.config import Settings, load_env_files
from .core.errors import BundleOperationError
from .core.models import Locator, RecordedStep
from .services.bundle_store import BundleStore
from .services.spec_updater import SpecUpdater
from .services.spec_writer import SpecWriter
from .generators.spec_generator import SpecGenerator
from .transforms.navigation_cleanup import cleanup
from .transforms.parameter_detector import detect
from .transforms.wait_cleanup import wait_cleanup

logger = logging.getLogger("qastudio.cli")


def _read_source(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def _load_recording(path: Path) -> Dict[str, Any]:
    """A recording file is either a bare list of steps or an object carrying ``steps``."""
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, list):
        return {"steps": payload}
    if not isinstance(payload, dict) or not isinstance(payload.get("steps"), list):
        raise ValueError(f"{path} does not contain a list of recorded steps")
    return payload


def _cli_cleanup(settings: Settings, args: argparse.Namespace) -> int:
    print(wait_cleanup(cleanup(_read_source(args.file), settings.auth_domains, settings.routing_param)), end="")
    return 0


def _cli_detect(settings: Settings, args: argparse.Namespace) -> int:
    source = _read_source(args.file)
    if not args.raw:
        source = cleanup(source, settings.auth_domains, settings.routing_param)
    print(json.dumps({"candidates": [c.to_dict() for c in detect(source)]}, ensure_ascii=False, indent=2))
    return 0


def _cli_generate(settings: Settings, args: argparse.Namespace) -> int:
    recording = _load_recording(Path(args.steps))
    steps: List[RecordedStep] = [
        RecordedStep.from_dict(item, order=item.get("order", position))
        for position, item in enumerate(recording["steps"], start=1)
    ]
    selected = {
        int(order): choice if isinstance(choice, int) else Locator.from_dict(choice)
        for order, choice in (recording.get("selectedLocators") or {}).items()
    }
    test_name: Optional[str] = args.name or recording.get("testName")
    if not test_name:
        raise ValueError("A test name is required (--name or testName in the recording file)")
    writer = SpecWriter(
        settings.bundle_root,
        SpecGenerator(settings.auth_domains, settings.routing_param, settings.control_attribute),
    )
    bundle = writer.generate(
        test_name,
        steps,
        args.module or recording.get("module"),
        selected,
        recording.get("parameterBindings") or [],
    )
    print(json.dumps({"status": "ok", "slug": bundle.slug, "directory": str(bundle.directory)}, ensure_ascii=False))
    return 0


def _cli_list(settings: Settings, args: argparse.Namespace) -> int:
    print(json.dumps({"bundles": BundleStore(settings.bundle_root).list_bundles()}, ensure_ascii=False, indent=2))
    return 0


def _cli_steps(settings: Settings, args: argparse.Namespace) -> int:
    steps = SpecUpdater(settings.bundle_root).list_steps(args.slug)
    for step in steps:
        print(f"{step.index:>3}  {step.id}  {step.description}")
    return 0


def _cli_serve(settings: Settings, args: argparse.Namespace) -> int:
    import uvicorn

    os.environ["QASTUDIO_BUNDLE_ROOT"] = str(settings.bundle_root)
    logger.info("Serving bundles from %s", settings.bundle_root)
    host = args.host or os.getenv("API_HOST", "127.0.0.1")
    port = args.port or int(os.getenv("API_PORT", "8001"))
    uvicorn.run("qastudio.api.main:app", host=host, port=port, reload=args.reload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Compile browser recordings into maintainable Playwright specs.")
    parser.add_argument("--bundle-root", default=None, help="Override QASTUDIO_BUNDLE_ROOT.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    cleanup_parser = subparsers.add_parser("cleanup", help="Drop redundant navigations and waits from a captured script.")
    cleanup_parser.add_argument("file", help="Script path, or - for stdin.")

    detect_parser = subparsers.add_parser("detect", help="List values that could become data parameters.")
    detect_parser.add_argument("file", help="Script path, or - for stdin.")
    detect_parser.add_argument("--raw", action="store_true", help="Skip navigation cleanup first.")

    generate_parser = subparsers.add_parser("generate", help="Write a test bundle from a recording JSON file.")
    generate_parser.add_argument("steps", help="Recording JSON (list of steps or an object with steps).")
    generate_parser.add_argument("--name", default=None, help="Test name.")
    generate_parser.add_argument("--module", default=None, help="Module or area under test.")

    subparsers.add_parser("list", help="List bundles and their completeness.")

    steps_parser = subparsers.add_parser("steps", help="Show the step layout of a bundle's spec.")
    steps_parser.add_argument("slug")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve_parser.add_argument("--host", default=None, help="Defaults to API_HOST or 127.0.0.1.")
    serve_parser.add_argument("--port", type=int, default=None, help="Defaults to API_PORT or 8001.")
    serve_parser.add_argument("--reload", action="store_true")
    return parser


_COMMANDS = {
    "cleanup": _cli_cleanup,
    "detect": _cli_detect,
    "generate": _cli_generate,
    "list": _cli_list,
    "steps": _cli_steps,
    "serve": _cli_serve,
}


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    load_env_files()
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    if args.bundle_root:
        settings = replace(settings, bundle_root=Path(args.bundle_root).resolve())
    try:
        return _COMMANDS[args.command](settings, args)
    except BundleOperationError as exc:
        print(json.dumps({"error": exc.to_dict()}, ensure_ascii=False))
        return 1
    except (OSError, ValueError) as exc:
        print(json.dumps({"error": str(exc)}, ensure_ascii=False))
        return 1


if __name__ == "__main__":
    sys.exit(main())
