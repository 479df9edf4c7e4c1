"""Merge orchestration: validate, filter, batch, and stream run files."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

from .chunked_processing import MergeConfig, merge_files_batched
from .data_io import (
    FileTypeFilter,
    InputFile,
    MergeError,
    MergeErrorKind,
    MergeResult,
    OutputMode,
    gather_input_files,
)
from .run_filter import remove_runs
from .validation import validate_input_files

logger = logging.getLogger(__name__)


def _log_file_summary(prefix: str, n_runs: int, files: Sequence[InputFile]) -> None:
    logger.info(f"{prefix} {n_runs} runs from {len(files)} files, including:")
    for file in files[:3]:
        logger.info(f"  {file.path}")


def _check_duplicate_paths(files: Sequence[InputFile]) -> None:
    seen = {}
    for file in files:
        resolved = file.path.resolve()
        if resolved in seen:
            raise MergeError(
                MergeErrorKind.DUPLICATE_INPUT,
                f"Trying to merge multiple copies of the same input file: "
                f"{seen[resolved]} and {file.path}",
                path=file.path,
            )
        seen[resolved] = file.path


def _check_output_not_input(files: Sequence[InputFile], output_path: Path) -> None:
    resolved_output = output_path.resolve()
    for file in files:
        if file.path.resolve() == resolved_output:
            raise MergeError(
                MergeErrorKind.DUPLICATE_INPUT,
                f"Output file {output_path} is also an input file",
                path=file.path,
            )


def _remove_intermediates(paths: Iterable[Path]) -> None:
    for path in paths:
        path.unlink(missing_ok=True)
        logger.debug(f"Removed intermediate file {path}")


def merge_run_files(
    paths: Sequence[Path],
    output_path: Path,
    file_type: FileTypeFilter = FileTypeFilter.EITHER,
    mode: OutputMode = OutputMode.FULL,
    removals: Iterable[str] = (),
    remove_duplicates: bool = False,
    overwrite: bool = False,
    config: MergeConfig | None = None,
) -> MergeResult:
    """Merge Salmon and RNA-see tab run files into one RNA-see tab table.

    Salmon files contribute one run named after the file stem; RNA-see tab
    files contribute every run in their header. Runs appear in input order.

    Steps:
    1. Validate candidates (unusable files are skipped with a warning)
    2. Reject duplicate inputs and an output path that is also an input
    3. Remove named and/or duplicate runs
    4. Check the file count and output path
    5. Stream the merge, batching through intermediate files if needed

    Args:
        paths: Candidate files in merge order
        output_path: Destination for the merged table (or run/gene list)
        file_type: Dialects accepted as input
        mode: FULL table, RUN_LIST, GENE_LIST, or DRY_RUN (no output)
        removals: Run names to drop before merging
        remove_duplicates: Keep only the first occurrence of each run name
        overwrite: Replace an existing output file
        config: Merge configuration (defaults to MergeConfig())

    Returns:
        MergeResult with file, run, and gene counts

    Raises:
        MergeError: On any fatal condition; nothing written to
            ``output_path`` should be trusted after a failure

    """
    config = config or MergeConfig()
    output_path = Path(output_path)
    removals = list(removals)

    summary = validate_input_files([Path(p) for p in paths], file_type)
    files = summary.files
    n_runs = summary.n_runs

    if not files:
        raise MergeError(
            MergeErrorKind.INSUFFICIENT_FILES,
            "Insufficient good files to combine.",
        )

    _check_duplicate_paths(files)
    _check_output_not_input(files, output_path)

    n_removed = 0
    if removals or remove_duplicates:
        _log_file_summary("Pre-run removal, was going to merge", n_runs, files)
        filtered = remove_runs(files, removals, remove_duplicates)
        files, n_runs, n_removed = filtered.files, filtered.n_runs, filtered.n_removed
        _log_file_summary("Post-run removal, merging", n_runs, files)
        if not files:
            raise MergeError(
                MergeErrorKind.INSUFFICIENT_FILES,
                "Insufficient good files to combine: every run was removed.",
            )
    else:
        _log_file_summary("Merging", n_runs, files)

    if len(files) > config.max_files:
        raise MergeError(
            MergeErrorKind.TOO_MANY_FILES,
            f"Trying to combine too many files (can combine {config.max_files} "
            f"files but tried to combine {len(files)}).",
        )

    if output_path.exists() and not overwrite:
        raise MergeError(
            MergeErrorKind.OUTPUT_EXISTS,
            f"Output file already exists: {output_path}",
            path=output_path,
        )

    intermediates: list[Path] = []
    try:
        batch_result = merge_files_batched(
            files,
            output_path,
            mode,
            config,
            overwrite=overwrite,
            intermediates=intermediates,
        )
    except MergeError:
        if mode is OutputMode.DRY_RUN:
            _remove_intermediates(intermediates)
        elif intermediates:
            logger.warning(f"Intermediate files left on disk: {[str(p) for p in intermediates]}")
        raise

    if mode is OutputMode.DRY_RUN or not config.keep_temp_files:
        _remove_intermediates(intermediates)

    result = MergeResult(
        output_path=output_path,
        mode=mode,
        n_files=len(files),
        n_runs=n_runs,
        n_genes=batch_result.n_genes,
        n_batches=batch_result.n_batches,
        runs=batch_result.runs,
        intermediate_paths=list(intermediates),
        invalid_files=[r.path for r in summary.invalid],
        n_runs_removed=n_removed,
    )

    logger.info(
        f"Merge complete: {result.n_runs} runs from {result.n_files} files, "
        f"{result.n_genes:,} genes"
    )
    if mode.writes_output:
        logger.info(f"  Wrote {mode.value} output: {output_path}")

    return result


def gather_and_merge(
    directory: Path,
    output_path: Path,
    file_names: Sequence[str] | None = None,
    **kwargs,
) -> MergeResult:
    """Gather candidate files from a directory and merge them.

    Args:
        directory: Directory holding the run files
        output_path: Destination for the merged table
        file_names: Explicit file names within ``directory``; all files in
            the directory are candidates when omitted
        **kwargs: Passed to merge_run_files()

    Returns:
        MergeResult from merge_run_files()

    """
    logger.info(f"Gathering and checking files from: {directory}")
    paths = gather_input_files(Path(directory), list(file_names) if file_names else None)
    return merge_run_files(paths, output_path, **kwargs)
