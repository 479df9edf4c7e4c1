"""Run removal and deduplication over validated run files."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

from .data_io import InputFile

logger = logging.getLogger(__name__)


@dataclass
class RunFilterResult:
    """Files left after run removal, with their retained run count."""

    files: tuple[InputFile, ...]
    n_runs: int
    n_removed: int


def remove_runs(
    files: Sequence[InputFile],
    removals: Iterable[str] = (),
    remove_duplicates: bool = False,
) -> RunFilterResult:
    """Drop named runs and, optionally, repeated run names.

    Files and columns are walked in input order. A column is dropped when its
    run name is in the removal set. With ``remove_duplicates``, every kept run
    name joins the removal set, so the first occurrence wins and all later
    ones (in any file) are dropped. Files with no columns left are removed.

    Args:
        files: Validated files in merge order
        removals: Run names to remove
        remove_duplicates: Keep only the first column for each run name

    Returns:
        RunFilterResult with new InputFile records (inputs are not modified)

    """
    removal_set = set(removals)
    kept_files = []
    n_runs = 0
    n_removed = 0

    for file in files:
        kept_columns = []
        for col in file.columns:
            name = file.run_name_of(col)
            if name in removal_set:
                n_removed += 1
                logger.debug(f"Removing run {name} from {file.path}")
                continue
            kept_columns.append(col)
            if remove_duplicates:
                removal_set.add(name)

        if not kept_columns:
            logger.debug(f"No runs left in {file.path}; file excluded")
            continue
        n_runs += len(kept_columns)
        if len(kept_columns) == len(file.columns):
            kept_files.append(file)
        else:
            kept_files.append(replace(file, columns=tuple(kept_columns)))

    return RunFilterResult(files=tuple(kept_files), n_runs=n_runs, n_removed=n_removed)
