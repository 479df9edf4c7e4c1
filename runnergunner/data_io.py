"""Data I/O module: run-file data model, gathering, and merged-table access."""

import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

import pandas as pd
import pyarrow as pa
import pyarrow.csv as pv
import pyarrow.parquet as pq

logger = logging.getLogger(__name__)

# First header cell of every RNA-see tab file (input and merged output)
RNASEE_HEADER = 'RNA-see TPM data file'

# Salmon quant.sf layout: Name, Length, EffectiveLength, TPM, NumReads
SALMON_N_FIELDS = 5
SALMON_TPM_FIELD = 3
SALMON_TPM_HEADER = 'TPM'

SALMON_SUFFIX = '.sf'
RNASEE_SUFFIX = '.rnatab'


class Dialect(Enum):
    """Input table format, fixed by file extension."""

    SALMON = 'salmon'
    TAB = 'rna-see'


class FileTypeFilter(Enum):
    """Restriction on which dialects are accepted as inputs."""

    SALMON = 'salmon'
    TAB = 'rna-see'
    EITHER = 'any'

    @classmethod
    def parse(cls, value: str) -> 'FileTypeFilter':
        """Parse a user-supplied type string (``salmon``, ``rna-see``, ``any``)."""
        key = value.strip().lower()
        if key == 'default':
            key = 'any'
        for member in cls:
            if member.value == key:
                return member
        raise ValueError(
            f"Invalid input file type: {value!r}. "
            f"Must be one of: salmon, rna-see, any"
        )

    def accepts(self, dialect: Dialect) -> bool:
        if self is FileTypeFilter.EITHER:
            return True
        return self.value == dialect.value


class OutputMode(Enum):
    """Projection of the merge written to the output path."""

    FULL = 'full'
    RUN_LIST = 'runs'
    GENE_LIST = 'genes'
    DRY_RUN = 'none'

    @property
    def writes_output(self) -> bool:
        return self is not OutputMode.DRY_RUN


@dataclass(frozen=True)
class Column:
    """One source field copied into the merged table."""

    run_name: str
    position: int


@dataclass(frozen=True)
class InputFile:
    """A validated run file with its dialect and retained value columns."""

    path: Path
    dialect: Dialect
    columns: tuple[Column, ...]

    def run_name_of(self, column: Column) -> str:
        """Run name a column contributes to the output header.

        Salmon files carry a single implicit run named after the file stem.
        """
        if self.dialect is Dialect.SALMON:
            return self.path.stem
        return column.run_name

    @property
    def run_names(self) -> list[str]:
        return [self.run_name_of(col) for col in self.columns]

    @property
    def max_position(self) -> int:
        return max(col.position for col in self.columns)


class MergeErrorKind(Enum):
    """Fatal conditions that abort a merge."""

    INSUFFICIENT_FILES = 'insufficient_files'
    DUPLICATE_INPUT = 'duplicate_input'
    OUTPUT_EXISTS = 'output_exists'
    TOO_MANY_FILES = 'too_many_files'
    OPEN_FAILED = 'open_failed'
    GENE_MISMATCH = 'gene_mismatch'
    PREMATURE_EOF = 'premature_eof'
    MALFORMED_ROW = 'malformed_row'


class MergeError(Exception):
    """A fatal merge condition with the context needed to report it."""

    def __init__(
        self,
        kind: MergeErrorKind,
        message: str,
        path: Optional[Path] = None,
        row: Optional[int] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.path = path
        self.row = row
        self.expected = expected
        self.actual = actual


@dataclass
class MergeResult:
    """Result of merging a set of run files."""

    output_path: Path
    mode: OutputMode
    n_files: int
    n_runs: int
    n_genes: int
    n_batches: int = 1
    runs: list[str] = field(default_factory=list)
    intermediate_paths: list[Path] = field(default_factory=list)
    invalid_files: list[Path] = field(default_factory=list)
    n_runs_removed: int = 0


def gather_input_files(
    directory: Path,
    file_names: Optional[list[str]] = None,
) -> list[Path]:
    """Build the candidate file list for a merge.

    Args:
        directory: Directory holding the run files
        file_names: Explicit file names to join onto ``directory``; when
            omitted, every regular file in ``directory`` is a candidate

    Returns:
        Candidate paths. Directory listings are sorted by name so the run
        column order is reproducible.

    """
    directory = Path(directory)

    if file_names:
        return [directory / name for name in file_names]

    with os.scandir(directory) as entries:
        paths = sorted(Path(entry.path) for entry in entries if entry.is_file())

    logger.info(f"Directory {directory} holds {len(paths)} files")
    return paths


def read_header(path: Path) -> list[str]:
    """Return the tab-split first line of a file."""
    with open(path, encoding='utf-8', newline='') as f:
        line = f.readline()
    return line.rstrip('\r\n').split('\t')


def load_merged_table(path: Path) -> pd.DataFrame:
    """Load a merged RNA-see tab table.

    Args:
        path: Path to a FULL-mode merge output

    Returns:
        DataFrame indexed by gene name with one column per run

    Raises:
        ValueError: If the file is not an RNA-see tab table

    """
    path = Path(path)
    header = read_header(path)
    if header[0] != RNASEE_HEADER:
        raise ValueError(f"Not an RNA-see tab table: {path}")

    df = pd.read_csv(
        path,
        sep='\t',
        index_col=0,
        dtype={RNASEE_HEADER: str},
        keep_default_na=False,
        na_values=[''],
    )
    df.index.name = 'gene'
    return df


def export_parquet(
    table_path: Path,
    output_path: Path,
    compression: str = 'zstd',
    block_size_mb: int = 16,
) -> int:
    """Convert a merged RNA-see tab table to parquet without loading it whole.

    The first column is renamed ``gene`` and kept as a string; run columns are
    read as float64 so every CSV block converts to the same schema.

    Args:
        table_path: FULL-mode merge output
        output_path: Parquet file to write
        compression: Parquet compression codec
        block_size_mb: CSV read block size (bounds memory use)

    Returns:
        Number of gene rows written

    Raises:
        ValueError: If the input is not an RNA-see table or repeats run names

    """
    table_path = Path(table_path)
    output_path = Path(output_path)

    header = read_header(table_path)
    if header[0] != RNASEE_HEADER:
        raise ValueError(f"Not an RNA-see tab table: {table_path}")

    runs = header[1:]
    duplicates = sorted(run for run, n in Counter(runs).items() if n > 1)
    if duplicates:
        raise ValueError(
            f"Run names repeat in {table_path.name}: {duplicates}. "
            f"Merge with duplicate removal before exporting."
        )

    column_types = {'gene': pa.string(), **{run: pa.float64() for run in runs}}

    if not _has_data_rows(table_path):
        # Header-only table: still produce a readable (empty) parquet file
        schema = pa.schema(list(column_types.items()))
        pq.write_table(schema.empty_table(), str(output_path), compression=compression)
        logger.info(f"Exported 0 genes x {len(runs)} runs to {output_path}")
        return 0

    reader = pv.open_csv(
        str(table_path),
        read_options=pv.ReadOptions(
            column_names=['gene'] + runs,
            skip_rows=1,
            block_size=block_size_mb * 1024 * 1024,
        ),
        parse_options=pv.ParseOptions(delimiter='\t'),
        convert_options=pv.ConvertOptions(column_types=column_types),
    )

    n_rows = 0
    with pq.ParquetWriter(str(output_path), reader.schema, compression=compression) as writer:
        for batch in reader:
            writer.write_batch(batch)
            n_rows += batch.num_rows

    logger.info(f"Exported {n_rows:,} genes x {len(runs)} runs to {output_path}")
    return n_rows


def _has_data_rows(path: Path) -> bool:
    with open(path, encoding='utf-8', newline='') as f:
        f.readline()
        return any(line.strip() for line in f)
