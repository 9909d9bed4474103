"""Packages and the replay script must load in a fresh interpreter, in any import order."""

import json
import subprocess
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.mark.parametrize(
    "module",
    [
        "src.models",
        "src.models.errors",
        "src.storage",
        "src.storage.cache",
        "src.storage.entity_store",
        "src.sync",
        "src.utils",
        "src.providers",
    ],
)
def test_module_imports_first_in_fresh_interpreter(module: str):
    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        cwd=REPO_ROOT,
        capture_output=True,
        text=True,
        timeout=60,
    )

    assert result.returncode == 0, result.stderr


def test_replay_script_applies_batch(tmp_path: Path):
    operations = tmp_path / "batch.json"
    operations.write_text(
        json.dumps(
            {
                "operations": [
                    {
                        "id": "trip",
                        "kind": "CREATE",
                        "entity_type": "Trip",
                        "data": {"name": "Oslo"},
                    },
                    {
                        "id": "memory",
                        "kind": "CREATE",
                        "entity_type": "Memory",
                        "data": {"title": "Fjord", "tripId": "$ref:trip"},
                        "dependencies": ["trip"],
                    },
                ]
            }
        )
    )

    result = subprocess.run(
        [
            sys.executable,
            "-m",
            "scripts.replay_batch",
            "--operations",
            str(operations),
            "--user",
            "user-1",
            "--device",
            "laptop",
        ],
        cwd=REPO_ROOT,
        capture_output=True,
        text=True,
        timeout=60,
    )

    assert result.returncode == 0, result.stderr
    assert '"failed": []' in result.stdout
