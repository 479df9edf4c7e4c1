"""
Validation module for candidate run files.

Each candidate is classified by extension, then its header line is checked
against the dialect's fixed layout:
- Salmon (*.sf): 5 tab-separated fields with TPM in field 3
- RNA-see tab (*.rnatab): 'RNA-see TPM data file' in field 0, runs after it

Files that fail their checks are reported and skipped; they never abort
a merge.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .data_io import (
    RNASEE_HEADER,
    RNASEE_SUFFIX,
    SALMON_N_FIELDS,
    SALMON_SUFFIX,
    SALMON_TPM_FIELD,
    SALMON_TPM_HEADER,
    Column,
    Dialect,
    FileTypeFilter,
    InputFile,
)

logger = logging.getLogger(__name__)

SUFFIX_DIALECTS = {
    SALMON_SUFFIX: Dialect.SALMON,
    RNASEE_SUFFIX: Dialect.TAB,
}


@dataclass
class ValidationResult:
    """Outcome of checking one candidate file."""

    path: Path
    is_candidate: bool
    is_valid: bool = False
    dialect: Optional[Dialect] = None
    columns: Tuple[Column, ...] = ()
    message: str = ''

    def to_input_file(self) -> InputFile:
        if not self.is_valid:
            raise ValueError(f"Cannot merge invalid file: {self}")
        return InputFile(path=self.path, dialect=self.dialect, columns=self.columns)

    def __str__(self) -> str:
        if not self.is_candidate:
            return f"Ignored: {self.path.name}"
        if self.is_valid:
            return f"Valid: {self.path.name} ({self.dialect.value}, {len(self.columns)} runs)"
        return f"Invalid: {self.path.name} - {self.message}"


@dataclass
class ValidationSummary:
    """Validated files in input order, plus everything that was rejected."""

    files: Tuple[InputFile, ...]
    invalid: List[ValidationResult] = field(default_factory=list)
    n_candidates: int = 0

    @property
    def n_runs(self) -> int:
        return sum(len(f.columns) for f in self.files)


def detect_dialect(path: Path) -> Optional[Dialect]:
    """Dialect implied by the file extension, or None if not a run file."""
    return SUFFIX_DIALECTS.get(Path(path).suffix)


def _check_salmon_header(fields: List[str]) -> Tuple[Tuple[Column, ...], str]:
    if len(fields) != SALMON_N_FIELDS:
        return (), (
            f"should have had {SALMON_N_FIELDS} columns, "
            f"but actually had {len(fields)}"
        )
    if fields[SALMON_TPM_FIELD] != SALMON_TPM_HEADER:
        return (), (
            f"column {SALMON_TPM_FIELD} should have been {SALMON_TPM_HEADER}, "
            f"but was actually: {fields[SALMON_TPM_FIELD]}"
        )
    return (Column(SALMON_TPM_HEADER, SALMON_TPM_FIELD),), ''


def _check_tab_header(fields: List[str]) -> Tuple[Tuple[Column, ...], str]:
    if len(fields) < 2:
        return (), (
            f"should have had at least 2 columns, "
            f"but actually had {len(fields)}"
        )
    if fields[0] != RNASEE_HEADER:
        return (), (
            f"first cell should have been '{RNASEE_HEADER}', "
            f"but was actually: {fields[0]}"
        )
    return tuple(Column(name, i) for i, name in enumerate(fields) if i > 0), ''


def validate_input_file(
    path: Path,
    file_type: FileTypeFilter = FileTypeFilter.EITHER,
) -> ValidationResult:
    """Check that a candidate file is a usable run file.

    Args:
        path: Candidate file
        file_type: Dialects accepted for this merge

    Returns:
        ValidationResult. Files whose extension is not an accepted dialect
        come back with ``is_candidate=False`` and are not diagnosed.

    """
    path = Path(path)
    dialect = detect_dialect(path)

    if dialect is None or not file_type.accepts(dialect):
        return ValidationResult(path=path, is_candidate=False)

    result = ValidationResult(path=path, is_candidate=True, dialect=dialect)

    try:
        with open(path, encoding='utf-8', newline='') as f:
            line = f.readline()
    except (OSError, UnicodeDecodeError) as e:
        result.message = f"failed to open ({e})"
        logger.warning(f"File {path} {result.message}")
        return result

    if not line:
        result.message = "has no header line"
        logger.warning(f"Could not get first line from file {path}")
        return result

    fields = line.rstrip('\r\n').split('\t')
    if dialect is Dialect.SALMON:
        columns, message = _check_salmon_header(fields)
    else:
        columns, message = _check_tab_header(fields)

    if message:
        result.message = message
        label = 'Salmon' if dialect is Dialect.SALMON else 'RNA-see tab'
        logger.warning(f"Invalid {label} file {path}: {message}. File is being omitted.")
        return result

    result.columns = columns
    result.is_valid = True
    logger.debug(str(result))
    return result


def validate_input_files(
    paths: Iterable[Path],
    file_type: FileTypeFilter = FileTypeFilter.EITHER,
) -> ValidationSummary:
    """Validate candidates in order, keeping the usable ones.

    Args:
        paths: Candidate files (order determines output run order)
        file_type: Dialects accepted for this merge

    Returns:
        ValidationSummary with the valid files as InputFile records

    """
    files = []
    invalid = []
    n_candidates = 0

    for path in paths:
        result = validate_input_file(path, file_type)
        if not result.is_candidate:
            continue
        n_candidates += 1
        if result.is_valid:
            files.append(result.to_input_file())
        else:
            invalid.append(result)

    summary = ValidationSummary(files=tuple(files), invalid=invalid, n_candidates=n_candidates)
    if invalid:
        logger.warning(f"Skipped {len(invalid)} of {n_candidates} candidate files")
    return summary
