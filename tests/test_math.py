from __future__ import annotations

import unittest

import numpy as np
import pandas as pd
from scipy.special import comb
from scipy.stats import betabinom

from radpop import amova, hindhe, likelihood, popgen, sim, spatial, structure


class TestReadModels(unittest.TestCase):
    def test_expected_alt_proportion_no_error(self) -> None:
        q = likelihood.expected_alt_proportion(2, 0.5, contam_rate=0.0, error_rate=0.0)
        np.testing.assert_allclose(q, [0.0, 0.5, 1.0])

    def test_expected_alt_proportion_contamination(self) -> None:
        q = likelihood.expected_alt_proportion(2, 0.0, contam_rate=0.1, error_rate=0.0)
        np.testing.assert_allclose(q, [0.0, 0.45, 0.9])

    def test_expected_alt_proportion_error(self) -> None:
        q = likelihood.expected_alt_proportion(4, 0.0, contam_rate=0.0, error_rate=0.01)
        self.assertAlmostEqual(float(q[0]), 0.01)
        self.assertAlmostEqual(float(q[-1]), 0.99)

    def test_binomial_matches_scipy(self) -> None:
        ll = float(likelihood.loglik_binom(3.0, 10.0, 0.3))
        self.assertAlmostEqual(ll, 3 * np.log(0.3) + 7 * np.log(0.7), places=4)

    def test_betabinomial_matches_scipy(self) -> None:
        od = 9.0
        q = 0.3
        expected = betabinom.logpmf(4, 12, q * od, (1 - q) * od) - np.log(comb(12, 4))
        ll = float(likelihood.loglik_betabinom(4.0, 12.0, q, overdispersion=od))
        self.assertAlmostEqual(ll, float(expected), places=3)

    def test_make_read_model_invalid(self) -> None:
        with self.assertRaises(ValueError):
            likelihood.make_read_model("poisson")
        with self.assertRaises(ValueError):
            likelihood.make_read_model("bb", overdispersion=-1.0)

    def test_genotype_log_likelihoods_mixed_ploidy(self) -> None:
        ref = np.array([[0, 5], [0, 3]], dtype=np.int32)
        alt = np.array([[0, 5], [0, 1]], dtype=np.int32)
        ll = likelihood.genotype_log_likelihoods(
            ref, alt, np.array([2, 4]), np.array([0.5, 0.5]), likelihood.make_read_model("binom")
        )
        self.assertEqual(ll.shape, (2, 2, 5))
        # Zero depth is uninformative; dosages above ploidy are impossible.
        np.testing.assert_allclose(ll[0, 0, :3], 0.0)
        self.assertTrue(np.all(np.isneginf(ll[0, :, 3:])))
        np.testing.assert_allclose(ll[1, 0, :], 0.0)
        # Balanced reads favour the heterozygote of a diploid.
        self.assertEqual(int(np.argmax(ll[0, 1])), 1)


class TestHindHe(unittest.TestCase):
    def test_hind_he_matrix_values(self) -> None:
        ref = np.array([[5], [10], [1]], dtype=np.int32)
        alt = np.array([[5], [0], [0]], dtype=np.int32)
        mat = hindhe.hind_he_matrix(ref, alt)
        # p = mean(0.5, 0, 0) = 1/6
        p = 1.0 / 6.0
        he = 2 * p * (1 - p)
        self.assertAlmostEqual(mat[0, 0], (1 - 40.0 / 90.0) / he, places=6)
        self.assertAlmostEqual(mat[1, 0], 0.0)
        self.assertTrue(np.isnan(mat[2, 0]))

    def test_monomorphic_locus_is_nan(self) -> None:
        ref = np.array([[5], [6]], dtype=np.int32)
        alt = np.zeros((2, 1), dtype=np.int32)
        self.assertTrue(np.all(np.isnan(hindhe.hind_he_matrix(ref, alt))))

    def test_expected_and_inbreeding(self) -> None:
        self.assertAlmostEqual(float(hindhe.expected_hind_he(2)), 0.5)
        self.assertAlmostEqual(float(hindhe.expected_hind_he(4, 0.5)), 0.375)
        self.assertAlmostEqual(float(hindhe.inbreeding_from_hind_he(0.5, 2)), 0.0)
        self.assertAlmostEqual(float(hindhe.inbreeding_from_hind_he(0.375, 4)), 0.5)
        with self.assertRaises(ValueError):
            hindhe.inbreeding_from_hind_he(0.5, 1)

    def test_simulated_expectation_matches_hwe_data(self) -> None:
        s = sim.simulate_rad(n_pops=1, n_per_pop=60, n_snp=300, fst=0.01, mean_depth=12.0, seed=4)
        observed = float(np.nanmean(hindhe.hind_he(s.ra).by_locus))
        res = hindhe.simulate_expected_hind_he(s.ra, ploidy=2, inbreeding=0.0, reps=5, seed=5)
        self.assertEqual(res.per_locus.shape, (5, 300))
        self.assertAlmostEqual(res.mean, observed, delta=0.05)
        lo, hi = res.interval
        self.assertLess(lo, res.mean)
        self.assertLess(res.mean, hi)

    def test_simulated_expectation_drops_with_inbreeding(self) -> None:
        s = sim.simulate_rad(n_pops=1, n_per_pop=30, n_snp=100, fst=0.01, mean_depth=12.0, seed=6)
        outbred = hindhe.simulate_expected_hind_he(s.ra, inbreeding=0.0, reps=3, seed=1)
        inbred = hindhe.simulate_expected_hind_he(s.ra, inbreeding=0.8, reps=3, seed=1)
        self.assertLess(inbred.mean, outbred.mean)

    def test_simulated_expectation_invalid(self) -> None:
        ra = sim.simulate_rad(n_pops=1, n_per_pop=5, n_snp=10, seed=0).ra
        with self.assertRaises(ValueError):
            hindhe.simulate_expected_hind_he(ra, ploidy=1)
        with self.assertRaises(ValueError):
            hindhe.simulate_expected_hind_he(ra, reps=0)
        with self.assertRaises(ValueError):
            hindhe.simulate_expected_hind_he(ra, inbreeding=1.5)
        with self.assertRaises(ValueError):
            hindhe.simulate_expected_hind_he(ra, inbreeding=-0.1)


class TestPopDiff(unittest.TestCase):
    def setUp(self) -> None:
        self.freqs = pd.DataFrame([[0.1], [0.9]], index=["A", "B"])

    def test_gst(self) -> None:
        res = popgen.calc_pop_diff(self.freqs, metric="Gst")
        self.assertAlmostEqual(res.global_value, 0.64)

    def test_jost_d(self) -> None:
        res = popgen.calc_pop_diff(self.freqs, metric="Jost's D")
        self.assertAlmostEqual(res.global_value, 0.32 / 0.82 * 2.0)

    def test_gprime_st(self) -> None:
        res = popgen.calc_pop_diff(self.freqs, metric="G'st")
        self.assertAlmostEqual(res.global_value, 0.64 * 1.18 / 0.82)

    def test_identical_populations(self) -> None:
        freqs = pd.DataFrame([[0.3, 0.6], [0.3, 0.6]], index=["A", "B"])
        for metric in ("Gst", "Jost's D", "G'st"):
            self.assertAlmostEqual(popgen.calc_pop_diff(freqs, metric=metric).global_value, 0.0)

    def test_fst_needs_sizes(self) -> None:
        with self.assertRaises(ValueError):
            popgen.calc_pop_diff(self.freqs, metric="Fst")
        sizes = pd.DataFrame([[20.0], [20.0]], index=["A", "B"])
        res = popgen.calc_pop_diff(self.freqs, metric="Fst", sizes=sizes)
        self.assertGreater(res.global_value, 0.5)
        self.assertLess(res.global_value, 0.64)

    def test_pairwise_table(self) -> None:
        freqs = pd.DataFrame(
            [[0.1, 0.2], [0.5, 0.5], [0.9, 0.8]], index=["A", "B", "C"]
        )
        res = popgen.calc_pop_diff(freqs, metric="Gst", pairwise=True)
        tab = res.pairwise.to_numpy()
        np.testing.assert_allclose(tab, tab.T)
        np.testing.assert_allclose(np.diag(tab), 0.0)
        self.assertGreater(tab[0, 2], tab[0, 1])

    def test_population_allele_freqs(self) -> None:
        dosage = np.array([[0.0, 1.0], [0.5, np.nan], [1.0, 0.0]])
        freqs = popgen.population_allele_freqs(dosage, ["A", "A", "B"], ploidy=np.array([2, 4, 2]))
        self.assertAlmostEqual(freqs.loc["A", 0], (0.0 * 2 + 0.5 * 4) / 6.0)
        self.assertAlmostEqual(freqs.loc["A", 1], 1.0)
        self.assertAlmostEqual(freqs.loc["B", 0], 1.0)
        he = popgen.expected_heterozygosity(freqs)
        self.assertAlmostEqual(he.loc["B", 1], 0.0)

    def test_unknown_metric(self) -> None:
        with self.assertRaises(ValueError):
            popgen.calc_pop_diff(self.freqs, metric="Dxy")


class TestAMOVA(unittest.TestCase):
    def test_one_level_separated(self) -> None:
        rng = np.random.default_rng(0)
        X = np.vstack([rng.normal(0.0, 0.05, (10, 20)), rng.normal(1.0, 0.05, (10, 20))])
        pops = ["A"] * 10 + ["B"] * 10
        res = amova.amova(X, pops, permutations=99, seed=1)
        self.assertGreater(res.phi["Phi_ST"], 0.9)
        self.assertLessEqual(res.p_values["Phi_ST"], 0.05)
        ssd = res.table.set_index("source")["SSD"]
        self.assertAlmostEqual(
            ssd["Among populations"] + ssd["Within populations"], ssd["Total"]
        )

    def test_two_level(self) -> None:
        rng = np.random.default_rng(2)
        centres = [0.0, 0.2, 2.0, 2.2]
        X = np.vstack([rng.normal(c, 0.05, (5, 10)) for c in centres])
        pops = np.repeat(["P1", "P2", "P3", "P4"], 5)
        regions = np.repeat(["R1", "R1", "R2", "R2"], 5)
        res = amova.amova(X, pops, regions, permutations=9, seed=3)
        self.assertEqual(set(res.phi), {"Phi_ST", "Phi_SC", "Phi_CT"})
        self.assertGreater(res.phi["Phi_CT"], res.phi["Phi_SC"] * 0.5)
        ssd = res.table.set_index("source")["SSD"]
        parts = ssd.drop("Total").sum()
        self.assertAlmostEqual(parts, ssd["Total"])

    def test_requires_two_populations(self) -> None:
        with self.assertRaises(ValueError):
            amova.amova(np.zeros((4, 3)), ["A"] * 4, permutations=9)

    def test_population_spanning_regions(self) -> None:
        X = np.arange(24, dtype=float).reshape(6, 4)
        with self.assertRaises(ValueError):
            amova.amova(X, ["A", "A", "B", "B", "C", "C"], ["R1", "R2", "R1", "R1", "R2", "R2"], permutations=9)


class TestSpatial(unittest.TestCase):
    def test_great_circle_one_degree(self) -> None:
        d = spatial.great_circle_distance(np.array([0.0, 0.0]), np.array([0.0, 1.0]))
        self.assertAlmostEqual(d[0, 1], 111.195, places=2)
        self.assertEqual(d[0, 0], 0.0)

    def test_networks_row_standardised(self) -> None:
        rng = np.random.default_rng(4)
        lat = rng.uniform(-10, 10, 12)
        lon = rng.uniform(-10, 10, 12)
        for kind in ("delaunay", "knn"):
            W = spatial.connection_network(lat, lon, kind=kind, k=3)
            np.testing.assert_allclose(W.sum(axis=1), 1.0)
            np.testing.assert_allclose(np.diag(W), 0.0)

    def test_distance_network_isolated(self) -> None:
        lat = np.array([0.0, 0.0, 0.0, 50.0])
        lon = np.array([0.0, 0.1, 0.2, 50.0])
        with self.assertRaises(ValueError):
            spatial.connection_network(lat, lon, kind="distance", d_max=100.0)
        with self.assertRaises(ValueError):
            spatial.connection_network(lat, lon, kind="hexagon")

    def _cline(self):
        rng = np.random.default_rng(5)
        n = 20
        lon = np.arange(n, dtype=float)
        lat = rng.normal(0.0, 0.01, n)
        X = lon[:, None] * rng.uniform(0.5, 1.5, 30)[None, :] + rng.normal(0.0, 0.5, (n, 30))
        W = spatial.connection_network(lat, lon, kind="knn", k=2)
        return X, W

    def test_spca_cline(self) -> None:
        X, W = self._cline()
        res = spatial.spca(X, W, nfposi=2, nfnega=1)
        self.assertEqual(res.scores.shape, (20, 3))
        self.assertGreater(res.eigenvalues[0], 0.0)
        self.assertGreater(res.moran[0], 0.5)
        self.assertLess(res.eigenvalues[-1], res.eigenvalues[0])

    def test_spca_global_test(self) -> None:
        X, W = self._cline()
        glob, loc = spatial.spca_tests(X, W, permutations=99, seed=6)
        self.assertLessEqual(glob.p_value, 0.05)
        self.assertEqual(glob.sims.shape, (99,))
        self.assertGreater(loc.p_value, 0.05)

    def test_spca_tests_weights_shape(self) -> None:
        X, W = self._cline()
        with self.assertRaises(ValueError):
            spatial.spca_tests(X, W[:-1, :-1], permutations=9, seed=0)

    def test_moran_i(self) -> None:
        X, W = self._cline()
        self.assertGreater(spatial.moran_i(X[:, 0], W), 0.5)

    def test_mantel_identical(self) -> None:
        rng = np.random.default_rng(7)
        d = spatial.euclidean_distance(rng.normal(size=(10, 3)))
        res = spatial.mantel_test(d, d, permutations=99, seed=8)
        self.assertAlmostEqual(res.observed, 1.0)
        self.assertLessEqual(res.p_value, 0.05)

    def test_mantel_shape_mismatch(self) -> None:
        with self.assertRaises(ValueError):
            spatial.mantel_test(np.zeros((3, 3)), np.zeros((4, 4)))

    def test_mantel_constant_distances(self) -> None:
        # every sample at one location
        rng = np.random.default_rng(2)
        d = spatial.euclidean_distance(rng.random((8, 3)))
        flat = np.ones((8, 8)) - np.eye(8)
        with self.assertRaises(ValueError):
            spatial.mantel_test(d, flat, permutations=99, seed=0)
        with self.assertRaises(ValueError):
            spatial.mantel_test(flat, d, permutations=99, seed=0)


class TestStructure(unittest.TestCase):
    def _blobs(self, n_per: int = 10, seed: int = 0):
        rng = np.random.default_rng(seed)
        centres = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
        pts = np.vstack([c + rng.normal(0.0, 0.1, (n_per, 2)) for c in centres])
        labels = np.repeat(["A", "B", "C"], n_per)
        return pts, labels

    def test_pca_rank_one(self) -> None:
        rng = np.random.default_rng(1)
        X = np.outer(rng.normal(size=15), rng.normal(size=8))
        res = structure.pca(X, n_pc=2)
        self.assertEqual(res.scores.shape, (15, 2))
        self.assertAlmostEqual(res.var_explained[0], 1.0, places=6)
        self.assertAlmostEqual(float(res.var_explained.sum()), 1.0, places=6)

    def test_pca_perc_selection(self) -> None:
        rng = np.random.default_rng(2)
        X = rng.normal(size=(20, 10))
        res = structure.pca(X, perc_pca=50.0)
        cum = np.cumsum(res.var_explained)
        self.assertGreaterEqual(cum[res.n_pc - 1] * 100, 50.0)
        if res.n_pc > 1:
            self.assertLess(cum[res.n_pc - 2] * 100, 50.0)

    def test_pca_fills_missing(self) -> None:
        X = np.array([[0.0, 1.0], [1.0, np.nan], [0.5, 0.0]])
        res = structure.pca(X, n_pc=1)
        self.assertTrue(np.all(np.isfinite(res.scores)))

    def test_find_clusters(self) -> None:
        pts, _ = self._blobs()
        res = structure.find_clusters(pts, max_k=5, seed=0)
        self.assertEqual(res.k, 3)
        self.assertEqual(len(np.unique(res.labels)), 3)
        self.assertEqual(res.bic.shape, (5,))

    def test_dapc_separated(self) -> None:
        pts, labels = self._blobs()
        rng = np.random.default_rng(3)
        X = np.hstack([pts, rng.normal(0.0, 0.1, (pts.shape[0], 4))])
        ids = [f"S{i}" for i in range(X.shape[0])]
        res = structure.dapc(X, labels, ids, n_pca=3)
        self.assertEqual(res.lda_scores.shape, (30, 2))
        self.assertAlmostEqual(res.assignment_rate, 1.0)
        np.testing.assert_allclose(res.posterior.sum(axis=1), 1.0)
        self.assertEqual(res.group_names, ["A", "B", "C"])

    def test_dapc_random_labels(self) -> None:
        rng = np.random.default_rng(11)
        X = rng.uniform(size=(60, 200))
        labels = rng.choice(["A", "B", "C"], size=60)
        ids = [f"S{i}" for i in range(60)]
        res = structure.dapc(X, labels, ids)
        self.assertLessEqual(res.pc_scores.shape[1], (60 - 3) // 3)
        self.assertEqual(res.pc_eigenvalues.shape, (res.pc_scores.shape[1],))
        self.assertLess(res.assignment_rate, 1.0)

    def test_dapc_single_group(self) -> None:
        with self.assertRaises(ValueError):
            structure.dapc(np.zeros((4, 3)), ["A"] * 4, ["a", "b", "c", "d"])

    def test_umap_shape(self) -> None:
        pts, _ = self._blobs()
        xy = structure.umap_embedding(pts, n_neighbors=5, seed=0)
        self.assertEqual(xy.shape, (30, 2))
        with self.assertRaises(ValueError):
            structure.umap_embedding(pts[:2])


if __name__ == "__main__":
    unittest.main()
