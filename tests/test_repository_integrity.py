"""Checks that every service module is wired into the application."""

from __future__ import annotations

import re
from pathlib import Path

APP_ROOT = Path(__file__).resolve().parents[1] / "app"
SERVICE_IMPORT = re.compile(r"from \.(?:services\.)?(\w+) import")


def _imported_services() -> set[str]:
    found: set[str] = set()
    for path in APP_ROOT.rglob("*.py"):
        for match in SERVICE_IMPORT.finditer(path.read_text(encoding="utf-8")):
            found.add(match.group(1))
    return found


def test_every_service_module_is_imported() -> None:
    services = {
        path.stem
        for path in (APP_ROOT / "services").glob("*.py")
        if path.stem != "__init__"
    }

    unused = sorted(services - _imported_services())

    assert not unused, "Service modules nothing imports: " + ", ".join(unused)


def test_sources_have_no_merge_conflict_markers() -> None:
    marker = re.compile(r"^(<<<<<<<|>>>>>>>) ", re.MULTILINE)
    offending = [
        str(path.relative_to(APP_ROOT.parent))
        for path in APP_ROOT.rglob("*.py")
        if marker.search(path.read_text(encoding="utf-8"))
    ]

    assert not offending, "Conflict markers left in: " + ", ".join(offending)
