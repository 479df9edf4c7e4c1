"""Command-line interface for runnergunner.

RNA-see runnergunner performs utility operations on quantified RNA-seq data
files as output by Salmon, Kallisto etc. It is mainly used to gather and merge
these runs into one RNA-see tab table for analysis.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import yaml

from . import __version__
from .chunked_processing import MergeConfig
from .data_io import FileTypeFilter, MergeError, OutputMode, export_parquet
from .merge import gather_and_merge, merge_run_files

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'merge': {
            'file_type': 'any',
            'max_open_files': 500,
            'max_merge_levels': 2,
            'progress_interval': 1000,
            'keep_temp_files': False,
            'remove_runs': [],
            'remove_duplicates': False,
            'overwrite': False,
        },
        'export': {
            'compression': 'zstd',
            'block_size_mb': 16,
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def build_merge_config(config: dict, args: argparse.Namespace | None = None) -> MergeConfig:
    """Build a MergeConfig from the 'merge' config section and CLI overrides."""
    section = config['merge']
    max_open_files = section['max_open_files']
    keep_temp_files = section['keep_temp_files']
    if args is not None:
        if getattr(args, 'max_open_files', None) is not None:
            max_open_files = args.max_open_files
        if getattr(args, 'keep_temp', False):
            keep_temp_files = True

    return MergeConfig(
        max_open_files=int(max_open_files),
        max_merge_levels=int(section['max_merge_levels']),
        progress_interval=int(section['progress_interval']),
        keep_temp_files=bool(keep_temp_files),
    )


def output_mode_from_args(args: argparse.Namespace) -> OutputMode:
    if args.nooutput:
        return OutputMode.DRY_RUN
    if args.runs:
        return OutputMode.RUN_LIST
    if args.genes:
        return OutputMode.GENE_LIST
    return OutputMode.FULL


def cmd_merge(args: argparse.Namespace) -> int:
    """Gather and merge Salmon / RNA-see tab run files."""
    config = load_config(Path(args.config) if args.config else None)
    section = config['merge']

    try:
        file_type = FileTypeFilter.parse(args.type or section['file_type'])
        merge_config = build_merge_config(config, args)
    except ValueError as e:
        logger.error(str(e))
        return 1

    if file_type is FileTypeFilter.SALMON:
        logger.info("Processing Salmon input files into RNA-see tab output file.")
    elif file_type is FileTypeFilter.TAB:
        logger.info("Processing RNA-see tab input files into RNA-see tab output file.")
    else:
        logger.info("Processing Salmon and RNA-see tab input files into RNA-see tab output file.")

    removals = list(section.get('remove_runs') or []) + list(args.remove or [])
    merge_kwargs = {
        'file_type': file_type,
        'mode': output_mode_from_args(args),
        'removals': removals,
        'remove_duplicates': args.duplicates or bool(section['remove_duplicates']),
        'overwrite': args.overwrite or bool(section['overwrite']),
        'config': merge_config,
    }
    output_path = Path(args.output)

    try:
        if args.input:
            # Explicit files are taken relative to --dir only when it is given
            if args.dir:
                paths = [Path(args.dir) / name for name in args.input]
            else:
                paths = [Path(name) for name in args.input]
            result = merge_run_files(paths, output_path, **merge_kwargs)
        else:
            result = gather_and_merge(Path(args.dir or '.'), output_path, **merge_kwargs)
    except MergeError as e:
        logger.error(str(e))
        return 1

    if result.invalid_files:
        logger.warning(f"{len(result.invalid_files)} invalid files were omitted")
    logger.info(
        f"Merged {result.n_runs} runs from {result.n_files} files "
        f"({result.n_genes:,} genes, {result.n_batches} batches)"
    )
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export a merged RNA-see tab table to parquet."""
    config = load_config(Path(args.config) if args.config else None)
    section = config['export']

    try:
        n_genes = export_parquet(
            Path(args.input),
            Path(args.output),
            compression=args.compression or section['compression'],
            block_size_mb=int(section['block_size_mb']),
        )
    except (OSError, ValueError) as e:
        logger.error(f"Export failed: {e}")
        return 1

    logger.info(f"Saved {n_genes:,} genes to {args.output}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='runnergunner',
        description='RNA-see runnergunner\n\n'
                    'Gathers and merges quantified RNA-seq runs (Salmon *.sf or RNA-see\n'
                    '*.rnatab files) into one RNA-see tab table.\n\n'
                    'Primary usage:\n'
                    '  runnergunner merge -d quant_dir/ -o combined.rnatab',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    merge_parser = subparsers.add_parser(
        'merge',
        help='Merge run files into one RNA-see tab table',
        description='Check Salmon / RNA-see tab files and merge their runs into one table, '
                    'or list their runs or genes.',
    )
    merge_parser.add_argument('-o', '--output', required=True, help='Output file')
    merge_parser.add_argument('-i', '--input', action='append',
                              help='Input file, one per -i flag '
                                   '(otherwise gathers all files in --dir)')
    merge_parser.add_argument('-d', '--dir',
                              help='Directory of files being combined (default: current directory)')
    merge_parser.add_argument('-x', '--remove', action='extend', nargs='+', metavar='RUN',
                              help='Remove the specified runs from input files')
    merge_parser.add_argument('-p', '--duplicates', action='store_true',
                              help='Remove runs with duplicate names from input files')
    mode_group = merge_parser.add_mutually_exclusive_group()
    mode_group.add_argument('-r', '--runs', action='store_true',
                            help='Check files, then output a list of runs instead of merging')
    mode_group.add_argument('-g', '--genes', action='store_true',
                            help='Check files, then output a list of genes instead of merging')
    mode_group.add_argument('-n', '--nooutput', action='store_true',
                            help='Check files and go through a dry merge without producing output')
    merge_parser.add_argument('-t', '--type',
                              help='Restrict accepted input file types '
                                   '(salmon (*.sf), rna-see (*.rnatab), any)')
    merge_parser.add_argument('-w', '--overwrite', action='store_true',
                              help='Overwrite existing output file')
    merge_parser.add_argument('-c', '--config', help='Configuration YAML file')
    merge_parser.add_argument('--max-open-files', type=int,
                              help='Input files opened at once (default: 500)')
    merge_parser.add_argument('--keep-temp', action='store_true',
                              help='Keep intermediate batch files')

    export_parser = subparsers.add_parser('export', help='Export a merged table to parquet')
    export_parser.add_argument('-i', '--input', required=True, help='Merged RNA-see tab table')
    export_parser.add_argument('-o', '--output', required=True, help='Output parquet path')
    export_parser.add_argument('--compression', help='Parquet compression (default: zstd)')
    export_parser.add_argument('-c', '--config', help='Configuration YAML file')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == 'merge':
        return cmd_merge(args)
    elif args.command == 'export':
        return cmd_export(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
