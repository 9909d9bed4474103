"""Topological ordering of batch operations."""

from collections.abc import Sequence

import structlog

from src.models.errors import CyclicDependencyError
from src.models.operation import SyncOperation

log = structlog.stdlib.get_logger()


class DependencyGraphSorter:
    """Orders a batch so every operation follows all of its dependencies."""

    def sort(self, operations: Sequence[SyncOperation]) -> list[SyncOperation]:
        """
        Sort operations by their dependencies.

        Depth-first traversal with a completed set and a visiting set. Operations
        are visited in submission order and dependencies in listed order, so the
        output is deterministic for a given input. Dependency ids that do not
        name an operation in the batch are treated as already satisfied.

        Args:
            operations: Unordered operations of one batch (ids must be unique)

        Returns:
            Operations ordered so each appears after all of its dependencies

        Raises:
            CyclicDependencyError: If the dependency graph contains a cycle
        """
        by_id: dict[str, SyncOperation] = {op.id: op for op in operations}
        completed: set[str] = set()
        visiting: set[str] = set()
        ordered: list[SyncOperation] = []

        for root in operations:
            if root.id in completed:
                continue

            # Explicit stack of (operation id, next dependency index) to avoid
            # recursion limits on long chains.
            stack: list[tuple[str, int]] = [(root.id, 0)]
            visiting.add(root.id)

            while stack:
                op_id, dep_index = stack[-1]
                deps = by_id[op_id].dependencies

                if dep_index < len(deps):
                    stack[-1] = (op_id, dep_index + 1)
                    dep_id = deps[dep_index]

                    if dep_id not in by_id or dep_id in completed:
                        continue
                    if dep_id in visiting:
                        log.warning(
                            "cyclic_dependency_detected",
                            operation_id=dep_id,
                            via=op_id,
                        )
                        raise CyclicDependencyError(dep_id)

                    visiting.add(dep_id)
                    stack.append((dep_id, 0))
                    continue

                stack.pop()
                visiting.discard(op_id)
                completed.add(op_id)
                ordered.append(by_id[op_id])

        log.debug("dependency_sort_completed", operation_count=len(ordered))
        return ordered

    def external_dependencies(self, operations: Sequence[SyncOperation]) -> set[str]:
        """
        Collect dependency ids that do not name an operation in the batch.

        Args:
            operations: Operations of one batch

        Returns:
            Set of dependency ids assumed to be committed elsewhere
        """
        batch_ids = {op.id for op in operations}
        return {dep for op in operations for dep in op.dependencies if dep not in batch_ids}
