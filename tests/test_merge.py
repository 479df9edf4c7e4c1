"""Tests for merge orchestration."""

from pathlib import Path

import pytest

from runnergunner.chunked_processing import MergeConfig
from runnergunner.data_io import (
    FileTypeFilter,
    MergeError,
    MergeErrorKind,
    OutputMode,
)
from runnergunner.merge import gather_and_merge, merge_run_files

SALMON_HEADER = "Name\tLength\tEffectiveLength\tTPM\tNumReads"
GENES = ["ENSG0001", "ENSG0002", "ENSG0003"]


def write_salmon(path: Path, tpms: list[str], genes: list[str] = GENES) -> Path:
    lines = [SALMON_HEADER] + [f"{g}\t1500\t1320.2\t{t}\t17" for g, t in zip(genes, tpms)]
    path.write_text("\n".join(lines) + "\n")
    return path


def write_rnatab(path: Path, runs: list[str], values: list[list[str]], genes: list[str] = GENES) -> Path:
    lines = ["\t".join(["RNA-see TPM data file", *runs])]
    lines += ["\t".join([g, *v]) for g, v in zip(genes, values)]
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def run_dir(tmp_path):
    """A directory of good run files plus files that must be skipped."""
    directory = tmp_path / "quant"
    directory.mkdir()
    write_salmon(directory / "DRR072886.sf", ["1", "2", "3"])
    write_salmon(directory / "DRR072887.sf", ["4", "5", "6"])
    write_rnatab(directory / "study.rnatab", ["SRR10", "SRR11"], [["7", "8"], ["9", "10"], ["11", "12"]])
    (directory / "bad.sf").write_text("Name\tTPM\n")
    (directory / "notes.txt").write_text("ignore me\n")
    return directory


class TestMergeRunFiles:
    """Tests for the end-to-end merge."""

    def test_full_merge_from_directory(self, run_dir, tmp_path):
        out = tmp_path / "combined.rnatab"

        result = gather_and_merge(run_dir, out)

        assert out.read_text() == (
            "RNA-see TPM data file\tDRR072886\tDRR072887\tSRR10\tSRR11\n"
            "ENSG0001\t1\t4\t7\t8\n"
            "ENSG0002\t2\t5\t9\t10\n"
            "ENSG0003\t3\t6\t11\t12\n"
        )
        assert result.n_files == 3
        assert result.n_runs == 4
        assert result.n_genes == 3
        assert result.invalid_files == [run_dir / "bad.sf"]

    def test_explicit_file_names(self, run_dir, tmp_path):
        out = tmp_path / "combined.rnatab"

        result = gather_and_merge(run_dir, out, file_names=["study.rnatab", "DRR072886.sf"])

        assert result.runs == ["SRR10", "SRR11", "DRR072886"]

    def test_type_restriction(self, run_dir, tmp_path):
        out = tmp_path / "combined.rnatab"

        result = gather_and_merge(run_dir, out, file_type=FileTypeFilter.TAB)

        assert result.runs == ["SRR10", "SRR11"]
        assert result.invalid_files == []

    def test_remove_run_drops_whole_salmon_file(self, run_dir, tmp_path):
        """Removing a Salmon file's only run excludes the file."""
        out = tmp_path / "combined.rnatab"

        result = gather_and_merge(run_dir, out, removals=["DRR072887"])

        assert result.n_files == 2
        assert result.n_runs == 3
        assert result.n_runs_removed == 1
        assert out.read_text().splitlines()[0] == "RNA-see TPM data file\tDRR072886\tSRR10\tSRR11"

    def test_dedup(self, tmp_path):
        """Only the first run named X survives with dedup; both without."""
        a = write_rnatab(tmp_path / "a.rnatab", ["X", "Y"], [["1", "2"]] * 3)
        b = write_rnatab(tmp_path / "b.rnatab", ["X"], [["3"]] * 3)

        merge_run_files([a, b], tmp_path / "dups.rnatab")
        result = merge_run_files([a, b], tmp_path / "dedup.rnatab", remove_duplicates=True)

        assert (tmp_path / "dups.rnatab").read_text().splitlines()[0] == "RNA-see TPM data file\tX\tY\tX"
        assert (tmp_path / "dedup.rnatab").read_text().splitlines()[0] == "RNA-see TPM data file\tX\tY"
        assert result.n_files == 1
        assert result.n_runs == 2

    def test_run_and_gene_lists(self, run_dir, tmp_path):
        runs = gather_and_merge(run_dir, tmp_path / "runs.txt", mode=OutputMode.RUN_LIST)
        gather_and_merge(run_dir, tmp_path / "genes.txt", mode=OutputMode.GENE_LIST)

        assert (tmp_path / "runs.txt").read_text() == "DRR072886\nDRR072887\nSRR10\nSRR11\n"
        assert (tmp_path / "genes.txt").read_text() == "ENSG0001\nENSG0002\nENSG0003\n"
        assert runs.n_genes == 3


class TestPreMergeChecks:
    """Tests for fatal conditions detected before streaming."""

    def test_no_valid_files(self, tmp_path):
        bad = tmp_path / "bad.sf"
        bad.write_text("Name\tTPM\n")

        with pytest.raises(MergeError) as excinfo:
            merge_run_files([bad, tmp_path / "notes.txt"], tmp_path / "out")

        assert excinfo.value.kind is MergeErrorKind.INSUFFICIENT_FILES
        assert not (tmp_path / "out").exists()

    def test_everything_removed(self, tmp_path):
        a = write_salmon(tmp_path / "A.sf", ["1", "2", "3"])

        with pytest.raises(MergeError) as excinfo:
            merge_run_files([a], tmp_path / "out", removals=["A"])

        assert excinfo.value.kind is MergeErrorKind.INSUFFICIENT_FILES

    def test_duplicate_input_path(self, tmp_path):
        """The same file twice, even by different spellings, is fatal."""
        a = write_salmon(tmp_path / "A.sf", ["1", "2", "3"])
        (tmp_path / "sub").mkdir()
        same = tmp_path / "sub" / ".." / "A.sf"

        with pytest.raises(MergeError) as excinfo:
            merge_run_files([a, same], tmp_path / "out")

        assert excinfo.value.kind is MergeErrorKind.DUPLICATE_INPUT
        assert "multiple copies" in str(excinfo.value)

    def test_output_is_an_input(self, run_dir):
        """Re-running into the gathered directory cannot overwrite an input."""
        first = run_dir / "combined.rnatab"
        gather_and_merge(run_dir, first)
        before = first.read_text()

        with pytest.raises(MergeError) as excinfo:
            gather_and_merge(run_dir, first, overwrite=True)

        assert excinfo.value.kind is MergeErrorKind.DUPLICATE_INPUT
        assert "also an input" in str(excinfo.value)
        assert first.read_text() == before

    def test_output_exists(self, tmp_path):
        a = write_salmon(tmp_path / "A.sf", ["1", "2", "3"])
        out = tmp_path / "out.rnatab"
        out.write_text("keep me\n")

        with pytest.raises(MergeError) as excinfo:
            merge_run_files([a], out)

        assert excinfo.value.kind is MergeErrorKind.OUTPUT_EXISTS
        assert out.read_text() == "keep me\n"

    def test_overwrite(self, tmp_path):
        a = write_salmon(tmp_path / "A.sf", ["1", "2", "3"])
        out = tmp_path / "out.rnatab"
        out.write_text("old\n")

        merge_run_files([a], out, overwrite=True)

        assert out.read_text().startswith("RNA-see TPM data file\tA\n")

    def test_too_many_files(self, tmp_path):
        """More than max_open_files ** max_merge_levels inputs is rejected."""
        paths = [write_salmon(tmp_path / f"s{i}.sf", ["1", "2", "3"]) for i in range(5)]
        config = MergeConfig(max_open_files=2, max_merge_levels=2)

        with pytest.raises(MergeError) as excinfo:
            merge_run_files(paths, tmp_path / "out", config=config)

        assert excinfo.value.kind is MergeErrorKind.TOO_MANY_FILES
        assert "can combine 4 files" in str(excinfo.value)

    def test_removal_applies_before_file_count(self, tmp_path):
        """The file limit is checked on the post-removal file set."""
        paths = [write_salmon(tmp_path / f"s{i}.sf", ["1", "2", "3"]) for i in range(5)]
        config = MergeConfig(max_open_files=2, max_merge_levels=2)

        result = merge_run_files(paths, tmp_path / "out", removals=["s0"], config=config)

        assert result.n_files == 4


class TestIntermediateFiles:
    """Tests for intermediate file cleanup."""

    @pytest.fixture
    def many_files(self, tmp_path):
        return [write_salmon(tmp_path / f"run{i}.sf", [str(i)] * 3) for i in range(5)]

    def test_removed_after_success(self, many_files, tmp_path):
        out = tmp_path / "out.rnatab"

        result = merge_run_files(many_files, out, config=MergeConfig(max_open_files=2, max_merge_levels=3))

        assert result.n_batches > 1
        assert result.intermediate_paths
        assert not any(p.exists() for p in result.intermediate_paths)

    def test_kept_on_request(self, many_files, tmp_path):
        out = tmp_path / "out.rnatab"
        config = MergeConfig(max_open_files=2, max_merge_levels=3, keep_temp_files=True)

        result = merge_run_files(many_files, out, config=config)

        assert all(p.exists() for p in result.intermediate_paths)

    def test_left_on_disk_after_failure(self, many_files, tmp_path):
        many_files.append(write_salmon(tmp_path / "odd.sf", ["1", "2", "3"], genes=["a", "b", "c"]))
        out = tmp_path / "out.rnatab"

        with pytest.raises(MergeError):
            merge_run_files(many_files, out, config=MergeConfig(max_open_files=2, max_merge_levels=3))

        assert list(tmp_path.glob("out.rnatab_temp_batch*"))


class TestDryRun:
    """Tests that DRY_RUN validates everything and writes nothing."""

    def test_no_output_created(self, run_dir, tmp_path):
        out = tmp_path / "combined.rnatab"

        result = gather_and_merge(run_dir, out, mode=OutputMode.DRY_RUN)

        assert not out.exists()
        assert result.n_genes == 3

    def test_existing_output_untouched(self, run_dir, tmp_path):
        out = tmp_path / "combined.rnatab"
        out.write_text("previous\n")

        gather_and_merge(run_dir, out, mode=OutputMode.DRY_RUN, overwrite=True)

        assert out.read_text() == "previous\n"

    def test_surfaces_alignment_failures(self, run_dir, tmp_path):
        write_salmon(run_dir / "shifted.sf", ["1", "2", "3"], genes=["ENSG0001", "ENSG0003", "ENSG0002"])
        out = tmp_path / "combined.rnatab"

        with pytest.raises(MergeError) as excinfo:
            gather_and_merge(run_dir, out, mode=OutputMode.DRY_RUN)

        assert excinfo.value.kind is MergeErrorKind.GENE_MISMATCH
        assert not out.exists()

    def test_batched_dry_run_leaves_no_files(self, tmp_path):
        inputs = tmp_path / "in"
        inputs.mkdir()
        for i in range(5):
            write_salmon(inputs / f"run{i}.sf", [str(i)] * 3)
        out = tmp_path / "combined.rnatab"

        gather_and_merge(inputs, out, mode=OutputMode.DRY_RUN, config=MergeConfig(max_open_files=2, max_merge_levels=3))

        assert sorted(p.name for p in tmp_path.iterdir()) == ["in"]

    def test_batched_dry_run_failure_leaves_no_files(self, tmp_path):
        inputs = tmp_path / "in"
        inputs.mkdir()
        for i in range(4):
            write_salmon(inputs / f"run{i}.sf", [str(i)] * 3)
        write_salmon(inputs / "run4.sf", ["1", "2", "3"], genes=["x", "y", "z"])
        out = tmp_path / "combined.rnatab"

        with pytest.raises(MergeError):
            gather_and_merge(inputs, out, mode=OutputMode.DRY_RUN, config=MergeConfig(max_open_files=2, max_merge_levels=3))

        assert sorted(p.name for p in tmp_path.iterdir()) == ["in"]
