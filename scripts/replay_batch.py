#!/usr/bin/env python3
"""
Replay a batch of sync operations against a fresh in-memory engine.

Useful for reproducing client batches: dependency ordering, per-operation
failures and conflict handling all behave as they do in the service.

The operations file holds a JSON list of operations, or an object with an
"operations" list, each shaped like:

    {"id": "op1", "kind": "CREATE", "entity_type": "Trip",
     "data": {"name": "Iceland"}, "dependencies": []}

Usage:
    python scripts/replay_batch.py --operations batch.json --user U --device D
        [--config CONFIG_PATH] [--max-concurrency N] [--delta]
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog
from pydantic import TypeAdapter, ValidationError

from src.models.errors import SyncError
from src.models.operation import BatchSyncOptions, SyncOperation
from src.providers import build_sync_coordinator
from src.sync.handlers import DEFAULT_ENTITY_TYPES
from src.utils.config_loader import ConfigLoader, ConfigurationError
from src.utils.logging_config import configure_logging_from_config

log = structlog.stdlib.get_logger()

_operations_adapter = TypeAdapter(list[SyncOperation])


def load_operations(path: str) -> list[SyncOperation]:
    """
    Load and validate operations from a JSON file.

    Raises:
        ValueError: If the file is not valid JSON or operations are malformed
    """
    try:
        raw = json.loads(Path(path).read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"{path} is not valid JSON: {e}") from e

    if isinstance(raw, dict):
        raw = raw.get("operations", [])

    try:
        return _operations_adapter.validate_python(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid operations in {path}: {e}") from e


async def replay(
    config_path: str | None,
    operations_path: str,
    user_id: str,
    device_id: str,
    max_concurrency: int | None = None,
    include_delta: bool = False,
) -> dict:
    """
    Replay one batch and return the response (and optionally the resulting delta).

    Returns:
        Dictionary ready for JSON output
    """
    loader = ConfigLoader()
    config = loader.load_config(config_path)
    configure_logging_from_config(config.logging)
    loader.validate_config(config, list(DEFAULT_ENTITY_TYPES))

    operations = load_operations(operations_path)
    log.info("replay_started", operations_path=operations_path, operation_count=len(operations))

    async with build_sync_coordinator(config) as coordinator:
        response = await coordinator.batch_sync(
            user_id,
            device_id,
            operations,
            BatchSyncOptions(max_concurrency=max_concurrency),
        )
        output = {"response": response.model_dump(mode="json")}

        if include_delta:
            delta = await coordinator.incremental_sync(user_id, device_id)
            output["delta"] = delta.model_dump(mode="json")

    log.info(
        "replay_completed",
        successful=len(response.successful),
        failed=len(response.failed),
    )
    return output


def main():
    """Main entry point for the batch replay script."""
    parser = argparse.ArgumentParser(description="Replay a sync batch against an in-memory engine")
    parser.add_argument("--config", type=str, help="Path to configuration file", default=None)
    parser.add_argument(
        "--operations", type=str, required=True, help="Path to JSON file with operations"
    )
    parser.add_argument("--user", type=str, required=True, help="Submitting user id")
    parser.add_argument("--device", type=str, required=True, help="Submitting device id")
    parser.add_argument(
        "--max-concurrency", type=int, default=None, help="Override the window size"
    )
    parser.add_argument(
        "--delta",
        action="store_true",
        help="Also print the full delta the user would receive after the batch",
    )

    args = parser.parse_args()

    try:
        output = asyncio.run(
            replay(
                args.config,
                args.operations,
                args.user,
                args.device,
                max_concurrency=args.max_concurrency,
                include_delta=args.delta,
            )
        )
    except (ConfigurationError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except SyncError as e:
        print(f"Batch rejected ({e.code}): {e}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(output, indent=2))
    sys.exit(1 if output["response"]["failed"] else 0)


if __name__ == "__main__":
    main()
