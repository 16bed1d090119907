import sys
import json
import pathlib

import numpy as np
import pandas as pd
import pytest

# Ensure project src/ is on sys.path for imports when running tests locally
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / 'src'
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from snp_kit.sims import (
    SimulationConfig, MALE, FEMALE, POPULATION_COLUMNS,
    equilibrium_frequency, q_equilibrium, make_reference_table, make_recombination_map,
    initialise, recomb, fitness, selection, reproduction, next_generation, migration,
    ped, write_ped, population_to_genotypes, run_simulation
)


def _config(**kw):
    base = dict(population_size=10, generations=2, n_loci=6, neutral_loci=[4, 5], seed=1)
    base.update(kw)
    return SimulationConfig(**base)


def _reference(n_loci=4, h=0.5, s=0.2, neutral=()):
    neu = np.isin(np.arange(n_loci), list(neutral))
    return pd.DataFrame({'locus': np.arange(n_loci), 'q': 0.5,
                         'h': np.where(neu, 0.0, h), 's': np.where(neu, 0.0, s), 'neutral': neu})


def _population(n=4, pop=1, chrom1=None, chrom2=None):
    half = n // 2
    return pd.DataFrame({
        'id': [f'p{pop}_{i}' for i in range(n)],
        'sex': [MALE] * half + [FEMALE] * half,
        'pop': pop,
        'chromosome1': chrom1 or ['AAAA'] * n,
        'chromosome2': chrom2 or ['AAAA'] * n,
        'father': '0',
        'mother': '0',
    }, columns=POPULATION_COLUMNS)


class TestConfig:
    def test_rejects_odd_population(self):
        with pytest.raises(ValueError, match="even"):
            _config(population_size=11)

    def test_rejects_out_of_range_locus(self):
        with pytest.raises(ValueError, match="outside"):
            _config(neutral_loci=[6])

    def test_rejects_bad_probabilities(self):
        with pytest.raises(ValueError, match="dominance"):
            _config(dominance=1.5)
        with pytest.raises(ValueError, match="sum to 1"):
            _config(mating_fractions=(0.5, 0.5, 0.5, 0.0))
        with pytest.raises(ValueError, match="sum to 1"):
            _config(msat_freqs={0: [0.5, 0.2]})

    def test_rejects_unknown_selection_model(self):
        with pytest.raises(ValueError, match="selection_model"):
            _config(selection_model="soft")

    def test_rejects_mating_success_too_small(self):
        # 4 pairs, floor fractions of 4 males give 0 + 1 + 2 = 3 matings
        with pytest.raises(ValueError, match="3 matings available for 4 pairs"):
            _config(population_size=8)
        assert _config(population_size=8, mating_success=False).population_size == 8

    def test_single_transfer_needs_one_sex(self):
        with pytest.raises(ValueError, match="exactly one"):
            _config(number_transfers=1, male_transfer=True, female_transfer=True)
        with pytest.raises(ValueError, match="exactly one"):
            _config(number_transfers=1, male_transfer=False, female_transfer=False)
        cfg = _config(number_transfers=2, male_transfer=True, female_transfer=True)
        assert cfg.female_transfer is True

    def test_json_round_trip(self, tmp_path):
        cfg = _config(msat_freqs={1: [0.25, 0.75]})
        fp = cfg.to_json(str(tmp_path / 'sim.json'))
        again = SimulationConfig.from_json(fp)
        assert again == cfg

    def test_json_unknown_key(self, tmp_path):
        fp = tmp_path / 'sim.json'
        fp.write_text(json.dumps({'population_size': 10, 'popsize': 10}))
        try:
            SimulationConfig.from_json(str(fp))
            assert False, "Should have raised ValueError"
        except ValueError as e:
            assert "popsize" in str(e)


def test_equilibrium_frequency():
    """Test the positive root of the mutation-selection balance quadratic."""
    h, s, u = 0.25, 0.01, 1e-4
    q = equilibrium_frequency(h, s, u)
    assert s * (1 - 2 * h) * q ** 2 + h * s * q - u == pytest.approx(0, abs=1e-12)
    assert 0 < q < 1
    assert q_equilibrium(1, 0, -4) == 2
    # additive case has a linear solution
    assert equilibrium_frequency(0.5, 0.01, 1e-4) == pytest.approx(0.02)
    assert equilibrium_frequency(0.5, 0, 1e-4, default=0.3) == 0.3


def test_reference_table():
    """Test neutral and multi-allelic loci carry no selection."""
    cfg = _config(msat_freqs={0: [1.0]}, q_neutral=0.4)
    ref = make_reference_table(cfg)
    assert list(ref.columns) == ['locus', 'q', 'h', 's', 'neutral']
    assert list(ref['neutral']) == [True, False, False, False, True, True]
    assert ref.loc[0, 's'] == 0 and ref.loc[4, 'h'] == 0
    assert ref.loc[1, 's'] == cfg.selection_coefficient
    assert ref.loc[5, 'q'] == 0.4
    assert ref.loc[2, 'q'] == pytest.approx(equilibrium_frequency(cfg.dominance, cfg.selection_coefficient,
                                                                  cfg.mutation_rate))


def test_recombination_map():
    cfg = _config(recombination_map=[0, 0, 1, 1, 0, 2])
    r_map = make_recombination_map(cfg)
    assert r_map.sum() == pytest.approx(1)
    assert r_map[5] == 0.5
    assert make_recombination_map(_config())[0] == pytest.approx(1 / 6)


def test_initialise():
    """Test founders: half males first, alleles matching locus types."""
    cfg = _config(msat_freqs={0: [0, 0, 1.0]})
    rng = np.random.default_rng(2)
    pop = initialise(2, cfg, make_reference_table(cfg), rng)
    assert list(pop.columns) == POPULATION_COLUMNS
    assert list(pop['sex']) == [MALE] * 5 + [FEMALE] * 5
    assert pop['id'].iloc[0] == 'p2_g0_1'
    for c in list(pop['chromosome1']) + list(pop['chromosome2']):
        assert len(c) == 6
        assert c[0] == '3'
        assert set(c[1:4]) <= {'a', 'A'}
        assert set(c[4:]) <= {'1', '2'}


def test_recomb():
    """Test crossover swaps the tails after the chiasma."""
    rng = np.random.default_rng(0)
    r_map = np.array([0, 1.0, 0, 0])
    assert recomb('aaaa', 'AAAA', r_map, rng) == ('aaAA', 'AAaa')
    last = np.array([0, 0, 0, 1.0])
    assert recomb('aaaa', 'AAAA', last, rng) == ('aaaa', 'AAAA')


def test_fitness():
    """Test per-locus fitness multiplies over selected loci."""
    ref = _reference(h=0.5, s=0.2, neutral=(3,))
    assert fitness('AAAA', 'AAAA', ref) == 1.0
    assert fitness('aAAA', 'aAAA', ref) == pytest.approx(0.8)
    assert fitness('aAAA', 'AAAA', ref) == pytest.approx(0.9)
    assert fitness('aaAA', 'aAAA', ref) == pytest.approx(0.8 * 0.9)
    # neutral symbols are ignored
    assert fitness('AAA2', 'AAA1', ref) == 1.0


def test_selection_relative():
    ref = _reference(h=0.5, s=0.2)
    off = _population(chrom1=['AAAA', 'aAAA', 'AAAA', 'aAAA'], chrom2=['AAAA', 'aAAA', 'AAAA', 'AAAA'])
    out = selection(off, ref, model='relative')
    assert len(out) == 4
    assert out['relative_fitness'].sum() == pytest.approx(1)
    assert out['relative_fitness'].iloc[0] > out['relative_fitness'].iloc[1]


def test_selection_absolute():
    """Test absolute selection removes individuals below the deviate."""
    ref = _reference(n_loci=4, h=1.0, s=1.0)
    off = _population(chrom1=['AAAA', 'aAAA', 'AAAA', 'AAAA'])
    out = selection(off, ref, model='absolute', genetic_load=0.8, rng=np.random.default_rng(1))
    assert 'p1_1' not in set(out['id'])
    assert len(out) == 3
    with pytest.raises(ValueError):
        selection(off, ref, model='hard')


def test_reproduction():
    """Test offspring inherit one gamete from each parent."""
    cfg = _config(population_size=4, n_loci=4, neutral_loci=[], mating_success=False, number_offspring=5)
    parents = _population(chrom1=['aaaa', 'aaaa', 'AAAA', 'AAAA'], chrom2=['aaaa', 'aaaa', 'AAAA', 'AAAA'])
    off = reproduction(parents, 1, cfg, np.random.default_rng(4), generation=3)
    assert len(off) > 0
    assert off['id'].iloc[0] == 'p1_g3_1'
    assert set(off['father']) <= {'p1_0', 'p1_1'}
    assert set(off['mother']) <= {'p1_2', 'p1_3'}
    assert set(off['chromosome1']) == {'aaaa'}
    assert set(off['chromosome2']) == {'AAAA'}


def test_next_generation():
    """Test the population returns to size with males first."""
    off = _population(n=20)
    off['sex'] = [MALE, FEMALE] * 10
    off['relative_fitness'] = 0.05
    nxt = next_generation(off, 6, np.random.default_rng(0))
    assert len(nxt) == 6
    assert list(nxt['sex']) == [MALE] * 3 + [FEMALE] * 3
    assert list(nxt.columns) == POPULATION_COLUMNS
    with pytest.raises(RuntimeError, match="cannot be maintained"):
        next_generation(off, 30, np.random.default_rng(0))


def test_migration_swaps_and_flips():
    """Test a single transfer swaps one male and flips the migrating sex."""
    cfg = _config(population_size=4, n_loci=4, neutral_loci=[], transfer_each_gen=1, number_transfers=1,
                  mating_success=False)
    p1 = _population(pop=1)
    p2 = _population(pop=2)
    rng = np.random.default_rng(0)

    same = migration(p1, p2, 1, cfg, True, False, rng)
    assert same[0] is p1 and same[2] is True

    n1, n2, m, f = migration(p1, p2, 2, cfg, True, False, rng)
    assert (m, f) == (False, True)
    assert (n1['pop'] == 2).sum() == 1
    assert (n2['pop'] == 1).sum() == 1
    assert n1.loc[n1['pop'] == 2, 'sex'].iloc[0] == MALE
    assert list(n1['sex']) == list(p1['sex'])


def test_migration_default_config_alternates_sex():
    """Test every event under the default flags moves one individual, alternating sex."""
    cfg = SimulationConfig(population_size=10, n_loci=4, transfer_each_gen=1, number_transfers=1)
    p1 = _population(n=10, pop=1)
    p2 = _population(n=10, pop=2)
    male_tran, female_tran = cfg.male_transfer, cfg.female_transfer
    rng = np.random.default_rng(5)
    moved, sexes = [], []
    for gen in range(2, 6):
        before = set(p1['id'])
        p1, p2, male_tran, female_tran = migration(p1, p2, gen, cfg, male_tran, female_tran, rng)
        arrived = p1[~p1['id'].isin(before)]
        moved.append(len(arrived))
        sexes.extend(arrived['sex'])
    assert moved == [1, 1, 1, 1]
    assert sexes == [MALE, FEMALE, MALE, FEMALE]


def test_migration_several_transfers():
    cfg = _config(population_size=10, n_loci=4, neutral_loci=[], transfer_each_gen=2, number_transfers=3)
    p1 = _population(n=10, pop=1)
    p2 = _population(n=10, pop=2)
    rng = np.random.default_rng(0)
    assert migration(p1, p2, 3, cfg, True, True, rng)[0] is p1
    n1, n2, m, f = migration(p1, p2, 4, cfg, True, True, rng)
    moved = n1[n1['pop'] == 2]
    assert len(moved) == 3
    assert (moved['sex'] == MALE).sum() == 2
    assert (m, f) == (True, True)


def test_ped_and_write_ped(tmp_path):
    pop = _population(n=2, chrom1=['aA12', 'AAAA'], chrom2=['AA21', 'aaaa'])
    assert ped(pop.iloc[0]) == 'a A A A 1 2 2 1'
    paths = write_ped(pop, str(tmp_path / 'sim' / 'gen1'))
    lines = pathlib.Path(paths['ped']).read_text().splitlines()
    assert lines[0] == '1 p1_0 0 0 1 -9 a A A A 1 2 2 1'
    assert lines[1].split()[4] == '2'
    assert pathlib.Path(paths['map']).read_text().splitlines()[3] == '1 Locus_4 0 4'


def test_population_to_genotypes():
    """Test deleterious and second neutral alleles are counted."""
    ref = _reference(n_loci=4, neutral=(2, 3))
    pop = _population(n=2, chrom1=['aA23', 'AAAA'], chrom2=['aa13', 'AAAA'])
    pop['pop'] = [1, 2]
    x = population_to_genotypes(pop, ref, generation=5, exclude=[3])
    assert x.loc_names == ['Locus_1', 'Locus_2', 'Locus_3']
    assert x.genotypes[0].tolist() == [2.0, 1.0, 1.0]
    assert x.genotypes[1].tolist() == [0.0, 0.0, 0.0]
    assert list(x.pop) == ['pop1', 'pop2']
    assert list(x.ind_metrics['generation']) == [5, 5]
    assert 'source_pop' in x.ind_metrics.columns


def test_run_simulation():
    """Test a short run keeps population sizes and records snapshots."""
    cfg = SimulationConfig(population_size=20, generations=3, n_loci=10, neutral_loci=[0, 1],
                           msat_freqs={9: [0.5, 0.5]}, number_offspring=6, selection_coefficient=0.05,
                           mutation_rate=1e-3, transfer_each_gen=1, number_transfers=2,
                           snapshot_every=2, seed=7)
    res = run_simulation(cfg, verbose=0)
    assert len(res.populations) == 2
    for pop in res.populations:
        assert len(pop) == 20
        assert list(pop['sex']) == [MALE] * 10 + [FEMALE] * 10
    # generation 2 and the last generation
    assert [int(s.ind_metrics['generation'].iloc[0]) for s in res.snapshots] == [2, 3]
    snap = res.snapshots[-1]
    assert snap.n_ind == 40
    assert snap.n_loc == 9
    assert snap.pop_names == ['pop1', 'pop2']


def test_run_simulation_is_reproducible():
    cfg = SimulationConfig(population_size=10, generations=2, n_loci=5, mating_success=False, seed=3)
    a = run_simulation(cfg, verbose=0)
    b = run_simulation(cfg, verbose=0)
    assert a.populations[0].equals(b.populations[0])
