"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""Export bundle fixtures: small Testmo-shaped JSON documents written to disk."""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest


def write_bundle(path: Path, datasets: dict[str, list[dict[str, Any]]], meta: dict | None = None) -> Path:
    """
    Write datasets in the layout of a Testmo export.

    Args:
        path: File to write
        datasets: Rows keyed by dataset name
        meta: Optional ``meta`` block, which is not a dataset

    Returns:
        Path: The written file
    """
    document: dict[str, Any] = {"meta": meta or {"exported_at": "2025-05-01 10:00:00"}}
    for name, rows in datasets.items():
        document[name] = {"columns": sorted({key for row in rows for key in row}), "data": rows}
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


@pytest.fixture
def bundle_factory(tmp_path: Path) -> Callable[..., Path]:
    """Write bundles into the test's temporary directory."""
    counter = {"value": 0}

    def factory(datasets: dict[str, list[dict[str, Any]]], name: str | None = None) -> Path:
        counter["value"] += 1
        return write_bundle(tmp_path / (name or f"export-{counter['value']}.json"), datasets)

    return factory
