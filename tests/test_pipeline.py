from __future__ import annotations

import contextlib
import io as stdio
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import numpy as np
import pandas as pd

from radpop import cli, config, pipeline, sim
from tests.jax_preflight import assert_cpu_backend

assert_cpu_backend()


def _write_sim(tmp: Path, regions: bool = False) -> tuple[Path, Path]:
    s = sim.simulate_rad(n_pops=3, n_per_pop=8, n_snp=80, fst=0.2, mean_depth=15.0, seed=3)
    ra_path = tmp / "sim.ra.tab"
    meta_path = tmp / "sim.meta.csv"
    sim.write_ra_tab(s.ra, ra_path)
    sim.write_metadata(s, meta_path)
    if regions:
        meta = pd.read_csv(meta_path)
        meta["region"] = np.where(meta["population"] == "Pop3", "R2", "R1")
        meta.to_csv(meta_path, index=False)
    return ra_path, meta_path


class TestRunPipeline(unittest.TestCase):
    def test_full_run(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp = Path(tmp)
            ra_path, meta_path = _write_sim(tmp, regions=True)
            cfg = config.PipelineConfig(
                depth_path=ra_path,
                prefix=str(tmp / "out" / "run"),
                metadata_path=meta_path,
                permutations=19,
                plots=True,
                seed=0,
            )
            res = pipeline.run_pipeline(cfg)

            for key in ("dosage", "dapc", "amova", "diff", "structure", "samples",
                        "hindhe_plot", "pca_plot", "dapc_plot", "spca_map", "diff_plot"):
                self.assertIn(key, res.outputs)
                self.assertTrue(res.outputs[key].exists(), msg=key)

            samples = pd.read_csv(res.outputs["samples"])
            self.assertEqual(samples.shape[0], res.ra.n_ind)
            for col in ("HindHe", "inbreeding", "cluster", "PC1", "LD1", "sPC1"):
                self.assertIn(col, samples.columns)

        self.assertEqual(res.dosage.shape, (res.ra.n_ind, res.ra.n_snp))
        self.assertEqual(set(res.amova.phi), {"Phi_ST", "Phi_SC", "Phi_CT"})
        self.assertGreater(res.amova.phi["Phi_ST"], 0.0)
        self.assertIsNotNone(res.mantel)
        self.assertEqual(res.diff.pairwise.shape, (3, 3))
        self.assertIsNotNone(res.dapc)
        self.assertGreater(res.dapc.assignment_rate, 0.9)

    def test_without_metadata(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp = Path(tmp)
            ra_path, _ = _write_sim(tmp)
            cfg = config.PipelineConfig(depth_path=ra_path, prefix=str(tmp / "bare"), mode="hwe", seed=0)
            res = pipeline.run_pipeline(cfg)
            self.assertTrue(Path(f"{tmp / 'bare'}.samples.csv").exists())
        self.assertIsNone(res.spca)
        self.assertIsNone(res.amova)
        self.assertEqual(res.calls.mode, "hwe")

    def test_hindhe_locus_filter(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp = Path(tmp)
            ra_path, meta_path = _write_sim(tmp)
            cfg = config.PipelineConfig(
                depth_path=ra_path,
                prefix=str(tmp / "filt"),
                metadata_path=meta_path,
                mode="hwe",
                hindhe_locus_filter=True,
                hindhe_reps=3,
                permutations=9,
                seed=0,
            )
            res = pipeline.run_pipeline(cfg)
        self.assertIsNotNone(res.expected_hindhe)
        self.assertEqual(res.expected_hindhe.ploidy, 2)
        self.assertEqual(res.expected_hindhe.per_locus.shape[0], 3)
        lo, hi = res.expected_hindhe.interval
        self.assertLess(lo, hi)
        self.assertLess(res.ra.n_snp, 80)
        self.assertEqual(res.dosage.shape, (res.ra.n_ind, res.ra.n_snp))


class TestCLI(unittest.TestCase):
    def _main(self, *argv: str) -> str:
        buf = stdio.StringIO()
        with contextlib.redirect_stdout(buf):
            cli.main(list(argv))
        return buf.getvalue()

    def test_commands_on_simulated_data(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp = Path(tmp)
            prefix = tmp / "sim"
            out = self._main(
                "simulate", "--prefix", str(prefix), "--n-pops", "2", "--n-per-pop", "8",
                "--n-snp", "60", "--fst", "0.2", "--seed", "1",
            )
            self.assertIn("Wrote RA file", out)
            ra_path = tmp / "sim.ra.tab"
            meta_path = tmp / "sim.meta.csv"
            self.assertTrue(ra_path.exists())
            self.assertTrue((tmp / "sim.zarr").exists())

            out = self._main("hindhe", str(ra_path), "--out", str(tmp / "hh.csv"))
            self.assertIn("Hind/He", out)
            hh = pd.read_csv(tmp / "hh.csv")
            self.assertEqual(hh.shape[0], 16)

            out = self._main(
                "amova", str(ra_path), "--metadata", str(meta_path), "--mode", "hwe",
                "--permutations", "9", "--seed", "0", "--out", str(tmp / "amova.csv"),
            )
            self.assertIn("Phi_ST", out)
            table = pd.read_csv(tmp / "amova.csv")
            self.assertEqual(table["source"].iloc[-1], "Total")

            self._main(
                "diff", str(tmp / "sim.zarr"), "--metadata", str(meta_path), "--mode", "naive",
                "--metric", "Gst", "--pairwise", "--out", str(tmp / "diff.csv"),
            )
            diff = pd.read_csv(tmp / "diff.csv", index_col=0)
            self.assertEqual(diff.shape, (2, 2))

            self._main(
                "export-structure", str(ra_path), "--metadata", str(meta_path), "--mode", "hwe",
                "--out", str(tmp / "geno.str"),
            )
            lines = (tmp / "geno.str").read_text().splitlines()
            self.assertEqual(len(lines), 1 + 2 * 16)

    def test_run_options_override_config(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp = Path(tmp)
            ra_path, meta_path = _write_sim(tmp)
            toml_path = tmp / "run.toml"
            toml_path.write_text(
                f"depth_path = \"{ra_path.as_posix()}\"\n"
                f"prefix = \"{(tmp / 'cfg').as_posix()}\"\n"
                "mode = \"naive\"\n"
                "maf_thresh = 0.05\n"
                "max_iter = 7\n"
            )
            with mock.patch.object(pipeline, "run_pipeline", side_effect=RuntimeError("stop")) as run:
                with self.assertRaises(RuntimeError):
                    self._main(
                        "run", "--config", str(toml_path), "--sampdepth-thresh", "1.5",
                        "--hindhe-bounds", "0.2", "3.0", "--overdispersion", "20", "--mode", "hwe",
                    )
            cfg = run.call_args.args[0]
        self.assertEqual(cfg.mode, "hwe")
        self.assertEqual(cfg.sampdepth_thresh, 1.5)
        self.assertEqual(cfg.hindhe_sample_bounds, (0.2, 3.0))
        self.assertEqual(cfg.overdispersion, 20.0)
        self.assertEqual(cfg.maf_thresh, 0.05)
        self.assertEqual(cfg.max_iter, 7)
        self.assertEqual(cfg.snpdepth_thresh, config.SNPDEPTH_THRESH_DEFAULT)

    def test_run_with_qc_options(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp = Path(tmp)
            ra_path, meta_path = _write_sim(tmp)
            prefix = tmp / "cli"
            out = self._main(
                "run", str(ra_path), "--metadata", str(meta_path), "--prefix", str(prefix),
                "--mode", "hwe", "--sampdepth-thresh", "0.5", "--hindhe-bounds", "0.3", "2.0",
                "--max-iter", "10", "--permutations", "9", "--seed", "0",
            )
            self.assertIn("Kept", out)
            samples = pd.read_csv(f"{prefix}.samples.csv")
        self.assertGreater(samples.shape[0], 0)
        self.assertLessEqual(samples.shape[0], 24)

    def test_errors_exit(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp = Path(tmp)
            ra_path, _ = _write_sim(tmp)
            with self.assertRaises(SystemExit):
                self._main("run")
            with self.assertRaises(SystemExit):
                # amova needs a population column
                bare = tmp / "bare.csv"
                pd.DataFrame({"accession": [f"S{i + 1}" for i in range(24)]}).to_csv(bare, index=False)
                self._main("amova", str(ra_path), "--metadata", str(bare), "--out", str(tmp / "a.csv"))


if __name__ == "__main__":
    unittest.main()
