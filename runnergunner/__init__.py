"""
runnergunner: gather and merge quantified RNA-seq runs for RNA-see

Merges Salmon quantification files (*.sf) and RNA-see tab files (*.rnatab)
into one wide RNA-see tab table, streaming row-aligned files so that large
run collections never have to fit in memory.
"""

__version__ = "0.1.0"

from .data_io import (
    Column,
    Dialect,
    FileTypeFilter,
    InputFile,
    MergeError,
    MergeErrorKind,
    MergeResult,
    OutputMode,
    export_parquet,
    gather_input_files,
    load_merged_table,
)
from .validation import (
    ValidationResult,
    validate_input_file,
    validate_input_files,
)
from .run_filter import (
    RunFilterResult,
    remove_runs,
)
from .chunked_processing import (
    MergeConfig,
    merge_batch_streaming,
    merge_files_batched,
    plan_batches,
)
from .merge import (
    gather_and_merge,
    merge_run_files,
)
