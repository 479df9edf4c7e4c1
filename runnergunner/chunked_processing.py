"""Chunked/streaming merge of run files.

This module merges row-aligned run files without loading them into memory.
Every file in a batch is opened at once and read one line per iteration, so
memory use is bounded by the number of open files, not by their size.

Key design principles:
- Never load an input file into memory
- Never hold more than ``max_open_files`` input streams (plus one output)
- Check gene alignment on every row and abort on the first mismatch
- When there are more files than the open-file budget, merge them in
  batches into intermediate RNA-see tab files and merge those
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from .data_io import (
    RNASEE_HEADER,
    Column,
    Dialect,
    InputFile,
    MergeError,
    MergeErrorKind,
    OutputMode,
)

logger = logging.getLogger(__name__)

OPEN_LIMIT_HINT = (
    "You may be trying to combine more files than your operating system can "
    "simultaneously open; lower max_open_files."
)


@dataclass
class MergeConfig:
    """Configuration for batched streaming merges."""

    # Input streams open at once; leaves headroom for the output stream
    max_open_files: int = 500
    # Batching depth: at most max_open_files ** max_merge_levels input files
    max_merge_levels: int = 2
    progress_interval: int = 1000  # Log progress every N genes
    keep_temp_files: bool = False  # Keep intermediate batch files after success

    read_buffer_bytes: int = 256 * 1024
    write_buffer_bytes: int = 4 * 1024 * 1024

    def __post_init__(self) -> None:
        if self.max_open_files < 2:
            raise ValueError(f"max_open_files must be at least 2, got {self.max_open_files}")
        if self.max_merge_levels < 1:
            raise ValueError(f"max_merge_levels must be at least 1, got {self.max_merge_levels}")
        if self.progress_interval < 1:
            raise ValueError(f"progress_interval must be at least 1, got {self.progress_interval}")

    @property
    def max_files(self) -> int:
        """Largest number of input files a merge will accept."""
        return self.max_open_files**self.max_merge_levels


@dataclass
class StreamMergeResult:
    """Result of streaming one batch of files into one output."""

    output_path: Path
    runs: list[str]
    n_genes: int
    n_files: int


@dataclass
class BatchMergeResult:
    """Result of a (possibly recursive) batched merge."""

    output_path: Path
    runs: list[str]
    n_genes: int
    n_batches: int
    intermediate_paths: list[Path] = field(default_factory=list)


def _split_line(line: str) -> list[str]:
    return line.rstrip("\r\n").split("\t")


def _open_inputs(stack: ExitStack, batch: Sequence[InputFile], config: MergeConfig) -> list[IO[str]]:
    readers = []
    for file in batch:
        try:
            reader = open(file.path, encoding="utf-8", newline="", buffering=config.read_buffer_bytes)
        except OSError as e:
            raise MergeError(
                MergeErrorKind.OPEN_FAILED,
                f"File {file.path} failed to open ({e}). {OPEN_LIMIT_HINT}",
                path=file.path,
            ) from e
        readers.append(stack.enter_context(reader))
    return readers


def _open_output(stack: ExitStack, output_path: Path, config: MergeConfig) -> IO[str]:
    try:
        out = open(output_path, "w", encoding="utf-8", newline="", buffering=config.write_buffer_bytes)
    except OSError as e:
        raise MergeError(
            MergeErrorKind.OPEN_FAILED,
            f"Failed to open output file {output_path} ({e})",
            path=output_path,
        ) from e
    return stack.enter_context(out)


def _read_line(file: InputFile, reader: IO[str], row: int) -> str:
    try:
        return reader.readline()
    except UnicodeDecodeError as e:
        raise MergeError(
            MergeErrorKind.MALFORMED_ROW,
            f"File {file.path} row {row} is not valid text ({e}). "
            f"Aborting combination operation.",
            path=file.path,
            row=row,
        ) from e


def _check_all_ended(batch: Sequence[InputFile], readers: Sequence[IO[str]], row: int) -> None:
    """The first file ran out of rows; every other file must be done too."""
    for file, reader in zip(batch[1:], readers[1:]):
        if _read_line(file, reader, row):
            raise MergeError(
                MergeErrorKind.PREMATURE_EOF,
                f"File {batch[0].path} ended prematurely at row {row}: "
                f"{file.path} has more rows. Aborting combination operation.",
                path=batch[0].path,
                row=row,
            )


def _write_header(out: IO[str] | None, mode: OutputMode, runs: list[str]) -> None:
    if mode is OutputMode.FULL:
        out.write("\t".join([RNASEE_HEADER, *runs]) + "\n")
    elif mode is OutputMode.RUN_LIST:
        for run in runs:
            out.write(run + "\n")


def merge_batch_streaming(
    batch: Sequence[InputFile],
    output_path: Path,
    mode: OutputMode,
    config: MergeConfig,
) -> StreamMergeResult:
    """Merge one batch of row-aligned files in a single streaming pass.

    Each iteration reads one line from every file in batch order. The first
    line of each file is its header; on every later line the first file's
    gene name (field 0) anchors the row and every other file must carry the
    same gene. Values are taken from each file's retained column positions.
    A row is written only after all of its files have been read and checked.

    Args:
        batch: Files to merge, no more than ``config.max_open_files``
        output_path: Destination (not opened in DRY_RUN mode)
        mode: Which projection of the merge to write
        config: Merge configuration

    Returns:
        StreamMergeResult with the output run names and gene count

    Raises:
        MergeError: On open failures, gene mismatches, malformed rows, or
            files with differing row counts

    """
    if not batch:
        raise MergeError(MergeErrorKind.INSUFFICIENT_FILES, "No files to merge")
    if len(batch) > config.max_open_files:
        raise ValueError(
            f"Batch of {len(batch)} files exceeds max_open_files={config.max_open_files}"
        )

    output_path = Path(output_path)
    runs = [name for file in batch for name in file.run_names]
    logger.debug(f"Streaming {len(batch)} files ({len(runs)} runs) -> {output_path} [{mode.value}]")

    n_genes = 0
    with ExitStack() as stack:
        readers = _open_inputs(stack, batch, config)
        out = _open_output(stack, output_path, config) if mode.writes_output else None

        row = 0  # 0 is the header line
        while True:
            gene = None
            values = []
            for i, (file, reader) in enumerate(zip(batch, readers)):
                line = _read_line(file, reader, row)

                # End of stream is only clean when the first file runs out
                if not line:
                    if i == 0:
                        _check_all_ended(batch, readers, row)
                        return StreamMergeResult(
                            output_path=output_path,
                            runs=runs,
                            n_genes=n_genes,
                            n_files=len(batch),
                        )
                    raise MergeError(
                        MergeErrorKind.PREMATURE_EOF,
                        f"File {file.path} ended prematurely at row {row}. "
                        f"Aborting combination operation.",
                        path=file.path,
                        row=row,
                    )

                fields = _split_line(line)
                if len(fields) <= file.max_position:
                    raise MergeError(
                        MergeErrorKind.MALFORMED_ROW,
                        f"File {file.path} row {row} has {len(fields)} fields, "
                        f"expected at least {file.max_position + 1}. "
                        f"Aborting combination operation.",
                        path=file.path,
                        row=row,
                    )

                if row == 0:
                    continue

                if i == 0:
                    gene = fields[0]
                elif fields[0] != gene:
                    raise MergeError(
                        MergeErrorKind.GENE_MISMATCH,
                        f"Gene name mismatch in file {file.path} at row {row}. "
                        f"Expected gene {gene} but read gene {fields[0]}",
                        path=file.path,
                        row=row,
                        expected=gene,
                        actual=fields[0],
                    )

                if mode is OutputMode.FULL:
                    values.extend(fields[col.position] for col in file.columns)

            if row == 0:
                _write_header(out, mode, runs)
            else:
                n_genes += 1
                if mode is OutputMode.FULL:
                    out.write("\t".join([gene, *values]) + "\n")
                elif mode is OutputMode.GENE_LIST:
                    out.write(gene + "\n")

                if n_genes % config.progress_interval == 0:
                    logger.info(f"  Processed {n_genes:,} genes...")

            row += 1


def plan_batches(files: Sequence[InputFile], max_open_files: int) -> list[list[InputFile]]:
    """Split files into contiguous batches of at most ``max_open_files``.

    Order is preserved within and across batches; it fixes the run column
    order of the merged table.
    """
    if max_open_files < 1:
        raise ValueError(f"max_open_files must be positive, got {max_open_files}")
    return [list(files[i : i + max_open_files]) for i in range(0, len(files), max_open_files)]


def intermediate_path(output_path: Path, level: int, index: int) -> Path:
    """Path of the intermediate file for one batch, next to the output."""
    output_path = Path(output_path)
    return output_path.with_name(f"{output_path.name}_temp_batch{level}_{index}")


def _as_tab_input(result: StreamMergeResult) -> InputFile:
    columns = tuple(Column(name, i) for i, name in enumerate(result.runs, start=1))
    return InputFile(path=result.output_path, dialect=Dialect.TAB, columns=columns)


def merge_files_batched(
    files: Sequence[InputFile],
    output_path: Path,
    mode: OutputMode,
    config: MergeConfig,
    overwrite: bool = False,
    intermediates: list[Path] | None = None,
    _level: int = 0,
) -> BatchMergeResult:
    """Merge any number of files while respecting the open-file budget.

    Up to ``max_open_files`` files are merged directly into ``output_path``.
    Larger sets are split into batches; each batch is merged in FULL mode
    into an intermediate RNA-see tab file, and the intermediates are merged
    recursively with the requested mode.

    Args:
        files: Validated files in merge order
        output_path: Final destination
        mode: Projection for the final pass (intermediates are always FULL)
        config: Merge configuration
        overwrite: Allow replacing existing intermediate files
        intermediates: Optional list that receives every intermediate path as
            soon as it is about to be written, so callers can clean up after
            a failure as well

    Returns:
        BatchMergeResult including every intermediate path created

    Raises:
        MergeError: If an intermediate path already exists without
            ``overwrite``, or on any streaming failure

    """
    output_path = Path(output_path)
    if intermediates is None:
        intermediates = []

    if len(files) <= config.max_open_files:
        result = merge_batch_streaming(files, output_path, mode, config)
        return BatchMergeResult(
            output_path=output_path,
            runs=result.runs,
            n_genes=result.n_genes,
            n_batches=1,
            intermediate_paths=intermediates,
        )

    batches = plan_batches(files, config.max_open_files)
    logger.info(
        f"Merging {len(files)} files in {len(batches)} batches "
        f"of up to {config.max_open_files} (level {_level})"
    )

    batch_outputs = []
    for index, batch in enumerate(batches):
        temp_path = intermediate_path(output_path, _level, index)
        if temp_path.exists() and not overwrite:
            raise MergeError(
                MergeErrorKind.OUTPUT_EXISTS,
                f"Intermediate file already exists: {temp_path}",
                path=temp_path,
            )
        intermediates.append(temp_path)
        result = merge_batch_streaming(batch, temp_path, OutputMode.FULL, config)
        logger.debug(f"  Batch {index}: {len(batch)} files, {result.n_genes:,} genes -> {temp_path}")
        batch_outputs.append(_as_tab_input(result))

    final = merge_files_batched(
        batch_outputs,
        output_path,
        mode,
        config,
        overwrite=overwrite,
        intermediates=intermediates,
        _level=_level + 1,
    )
    final.n_batches += len(batches)
    return final
