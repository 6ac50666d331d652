"""Pytest configuration: category markers from filename conventions."""

from __future__ import annotations

import pathlib

import pytest


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    for item in items:
        name = pathlib.Path(str(item.fspath)).name.lower()
        if "e2e" in name or "scenario" in name:
            item.add_marker(pytest.mark.e2e)
            continue
        item.add_marker(pytest.mark.unit)
