from __future__ import annotations
import json
import logging
import math
import os
import re
from dataclasses import dataclass, field, fields, asdict
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .genotypes import GenotypeMatrix, SNP
from .files import ensure_dir
from .verbosity import check_verbosity, flag_start, flag_end

logger = logging.getLogger(__name__)

# ----------------- allele encoding -----------------
DELETERIOUS = "a"
WILD_TYPE = "A"
NEUTRAL_ALLELES = ("1", "2")
MALE = "Male"
FEMALE = "Female"
# neutral and multi-allelic symbols are masked to this before fitness scoring
_NEUTRAL_MASK_RE = re.compile(r"[-^1-9]")
NEUTRAL_SYMBOL = "0"

POPULATION_COLUMNS = ["id", "sex", "pop", "chromosome1", "chromosome2", "father", "mother"]
SELECTION_MODELS = ("absolute", "relative")
DEFAULT_MATING_FRACTIONS = (0.2, 0.3, 0.3, 0.2)  # males mating 0, 1, 2, 3 times


@dataclass
class SimulationConfig:
    """
    Parameters of a two-population forward simulation.

    Loci positions are zero-based. Neutral loci carry alleles '1'/'2'; loci in
    `msat_freqs` carry alleles '1'..'9' drawn from the given frequencies; all
    other loci are under selection with alleles 'a' (deleterious) and 'A'.
    """
    population_size: int = 100
    generations: int = 10
    n_loci: int = 100
    neutral_loci: List[int] = field(default_factory=list)
    msat_freqs: Dict[int, List[float]] = field(default_factory=dict)
    number_offspring: float = 10.0
    variance_offspring: float = 1000000.0
    mating_success: bool = True
    mating_fractions: Tuple[float, float, float, float] = DEFAULT_MATING_FRACTIONS
    recombination: bool = True
    recombination_males: bool = True
    recom_event: float = 1.0
    recombination_map: Optional[List[float]] = None
    selection: bool = True
    selection_model: str = "relative"
    genetic_load: float = 0.8
    dominance: float = 0.25
    selection_coefficient: float = 0.001
    mutation_rate: float = 5e-5
    q: Optional[List[float]] = None
    q_neutral: float = 0.5
    transfer_each_gen: int = 1
    number_transfers: int = 1
    male_transfer: bool = True
    female_transfer: bool = False
    snapshot_every: int = 1
    seed: Optional[int] = None

    def __post_init__(self):
        self.neutral_loci = sorted(int(i) for i in self.neutral_loci)
        self.msat_freqs = {int(k): [float(v) for v in vals] for k, vals in self.msat_freqs.items()}
        self.mating_fractions = tuple(float(f) for f in self.mating_fractions)
        if self.population_size <= 0 or self.population_size % 2 != 0:
            raise ValueError(f"population_size must be a positive even number, got {self.population_size}")
        if self.generations < 1:
            raise ValueError("generations must be at least 1")
        if self.n_loci < 1:
            raise ValueError("n_loci must be at least 1")
        for pos in list(self.neutral_loci) + list(self.msat_freqs):
            if pos < 0 or pos >= self.n_loci:
                raise ValueError(f"Locus position {pos} outside 0..{self.n_loci - 1}")
        for name in ("dominance", "selection_coefficient", "genetic_load", "mutation_rate", "q_neutral"):
            _check_probability(name, getattr(self, name))
        if self.q is not None:
            if len(self.q) != self.n_loci:
                raise ValueError(f"q has {len(self.q)} entries for {self.n_loci} loci")
            for v in self.q:
                _check_probability("q", v)
        if len(self.mating_fractions) != 4:
            raise ValueError("mating_fractions needs four entries (0, 1, 2 and 3 matings)")
        for v in self.mating_fractions:
            _check_probability("mating_fractions", v)
        if not math.isclose(sum(self.mating_fractions), 1.0, abs_tol=1e-9):
            raise ValueError("mating_fractions must sum to 1")
        for pos, freqs in self.msat_freqs.items():
            if not 1 <= len(freqs) <= 9:
                raise ValueError(f"Locus {pos}: between 1 and 9 alleles required")
            for v in freqs:
                _check_probability("msat_freqs", v)
            if not math.isclose(sum(freqs), 1.0, abs_tol=1e-9):
                raise ValueError(f"Locus {pos}: allele frequencies must sum to 1")
        if self.recombination_map is not None:
            if len(self.recombination_map) != self.n_loci:
                raise ValueError(f"recombination_map has {len(self.recombination_map)} entries for {self.n_loci} loci")
            if any(v < 0 for v in self.recombination_map) or sum(self.recombination_map) <= 0:
                raise ValueError("recombination_map must hold non-negative weights with a positive sum")
        if self.selection_model not in SELECTION_MODELS:
            raise ValueError(f"selection_model must be one of {SELECTION_MODELS}, got {self.selection_model!r}")
        if self.number_offspring <= 0 or self.variance_offspring <= 0:
            raise ValueError("number_offspring and variance_offspring must be positive")
        if self.recom_event < 0:
            raise ValueError("recom_event must be non-negative")
        if self.transfer_each_gen < 1:
            raise ValueError("transfer_each_gen must be at least 1")
        if self.number_transfers < 0 or math.ceil(self.number_transfers / 2) > self.population_size // 2:
            raise ValueError("number_transfers must lie between 0 and the population size")
        if self.number_transfers == 1 and self.male_transfer == self.female_transfer:
            raise ValueError("A single transfer moves one sex at a time; set exactly one of "
                             "male_transfer and female_transfer")
        if self.mating_success:
            half = self.population_size // 2
            slots = mating_slots(half, self.mating_fractions)
            if slots < half:
                raise ValueError(f"Only {slots} matings available for {half} pairs; population_size too small "
                                 "for the mating-success model")
        if self.snapshot_every < 1:
            raise ValueError("snapshot_every must be at least 1")

    @classmethod
    def from_json(cls, path: str) -> "SimulationConfig":
        """
        Load a configuration from a JSON object of field names to values.

        Raises:
            ValueError: If the file holds unknown parameters or invalid values
        """
        with open(path) as fh:
            raw = json.load(fh)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"Unknown simulation parameters in {path}: {unknown}")
        return cls(**raw)

    def to_json(self, path: str) -> str:
        with open(path, 'w') as fh:
            json.dump(asdict(self), fh, indent=2)
        return path


def _check_probability(name: str, value: float) -> None:
    if not 0.0 <= float(value) <= 1.0:
        raise ValueError(f"{name} must lie in [0, 1], got {value}")


# ----------------- reference table -----------------
def delta(a: float, b: float, c: float) -> float:
    return b ** 2 - 4 * a * c


def q_equilibrium(a: float, b: float, c: float) -> float:
    """Positive root of a*q^2 + b*q + c = 0."""
    return (-b + math.sqrt(delta(a, b, c))) / (2 * a)


def equilibrium_frequency(h: float, s: float, u: float, default: float = 0.5) -> float:
    """Deleterious allele frequency at mutation-selection balance, s(1-2h)q^2 + hsq - u = 0."""
    if s == 0:
        return default
    a = s * (1 - 2 * h)
    b = h * s
    if a == 0:
        q = u / b
    else:
        q = q_equilibrium(a, b, -u)
    return float(min(max(q, 0.0), 1.0))


def make_reference_table(config: SimulationConfig) -> pd.DataFrame:
    """
    Per-locus allele frequency q, dominance h and selection coefficient s.

    Neutral and multi-allelic loci get s = 0. When `config.q` is None, loci
    under selection start at mutation-selection balance.
    """
    neutral = np.zeros(config.n_loci, dtype=bool)
    neutral[list(config.neutral_loci)] = True
    neutral[list(config.msat_freqs)] = True
    h = np.where(neutral, 0.0, config.dominance)
    s = np.where(neutral, 0.0, config.selection_coefficient)
    if config.q is not None:
        q = np.asarray(config.q, dtype=float)
    else:
        q_sel = equilibrium_frequency(config.dominance, config.selection_coefficient, config.mutation_rate,
                                      default=config.q_neutral)
        q = np.full(config.n_loci, q_sel)
    q = np.where(neutral, config.q_neutral, q)
    return pd.DataFrame({'locus': np.arange(config.n_loci), 'q': q, 'h': h, 's': s, 'neutral': neutral})


def make_recombination_map(config: SimulationConfig) -> np.ndarray:
    """Chiasma probabilities over positions 1..n_loci (uniform unless configured)."""
    if config.recombination_map is None:
        w = np.ones(config.n_loci)
    else:
        w = np.asarray(config.recombination_map, dtype=float)
    return w / w.sum()


# ----------------- individuals -----------------
def sample_alleles(q: np.ndarray, rng: np.random.Generator, alleles: Tuple[str, str] = (DELETERIOUS, WILD_TYPE)) -> str:
    """One chromosome string: allele[0] with probability q at each locus, else allele[1]."""
    draws = rng.random(len(q)) < q
    return ''.join(np.where(draws, alleles[0], alleles[1]))


def _neutral_chromosome(chrom: str, config: SimulationConfig, rng: np.random.Generator) -> str:
    chars = list(chrom)
    for pos in config.neutral_loci:
        chars[pos] = NEUTRAL_ALLELES[int(rng.random() < 0.5)]
    for pos, freqs in config.msat_freqs.items():
        chars[pos] = str(rng.choice(len(freqs), p=freqs) + 1)
    return ''.join(chars)


def initialise(pop_number: int, config: SimulationConfig, reference: pd.DataFrame,
               rng: np.random.Generator) -> pd.DataFrame:
    """
    Create a founding population: first half males, second half females.

    Returns:
        DataFrame with columns id, sex, pop, chromosome1, chromosome2, father, mother
    """
    n = config.population_size
    q = reference['q'].to_numpy()
    rows = []
    for i in range(n):
        c1 = _neutral_chromosome(sample_alleles(q, rng), config, rng)
        c2 = _neutral_chromosome(sample_alleles(q, rng), config, rng)
        rows.append({
            'id': f"p{pop_number}_g0_{i + 1}",
            'sex': MALE if i < n // 2 else FEMALE,
            'pop': pop_number,
            'chromosome1': c1,
            'chromosome2': c2,
            'father': '0',
            'mother': '0',
        })
    return pd.DataFrame(rows, columns=POPULATION_COLUMNS)


def recomb(chromosome1: str, chromosome2: str, r_map: np.ndarray, rng: np.random.Generator) -> Tuple[str, str]:
    """
    Single crossover at a chiasma drawn from the recombination map.

    The chiasma k (1..n_loci) splits after the k-th locus; k == n_loci leaves
    both chromosomes unchanged.
    """
    n_loci = len(chromosome1)
    k = int(rng.choice(len(r_map), p=r_map)) + 1
    if k >= n_loci:
        return chromosome1, chromosome2
    return chromosome1[:k] + chromosome2[k:], chromosome2[:k] + chromosome1[k:]


def _gamete(pair: Tuple[str, str], recombine: bool, config: SimulationConfig, r_map: np.ndarray,
            rng: np.random.Generator) -> str:
    c1, c2 = pair
    if recombine:
        for _ in range(rng.poisson(config.recom_event)):
            c1, c2 = recomb(c1, c2, r_map, rng)
    return (c1, c2)[int(rng.integers(0, 2))]


def _category_sizes(n_males: int, fractions: Sequence[float]) -> List[int]:
    return [int(math.floor(f * n_males)) for f in fractions]


def mating_slots(n_males: int, fractions: Sequence[float]) -> int:
    """Number of matings offered by `n_males` males mating 0, 1, 2 or 3 times."""
    return sum(times * size for times, size in zip((0, 1, 2, 3), _category_sizes(n_males, fractions)))


def _mating_males(males: np.ndarray, fractions: Sequence[float], rng: np.random.Generator) -> np.ndarray:
    """Male ids repeated by their number of matings (0, 1, 2 or 3)."""
    pool = rng.permutation(males)
    sizes = _category_sizes(len(males), fractions)
    start = sizes[0]
    mating = []
    for times, size in zip((1, 2, 3), sizes[1:]):
        mating.extend(np.repeat(pool[start:start + size], times))
        start += size
    return np.asarray(mating, dtype=object)


def reproduction(pop: pd.DataFrame, pop_number: int, config: SimulationConfig, rng: np.random.Generator,
                 r_map: Optional[np.ndarray] = None, generation: int = 1) -> pd.DataFrame:
    """
    Pair males with females and produce offspring.

    With `config.mating_success` males mate 0-3 times following
    `config.mating_fractions`; otherwise every male mates once. The number of
    offspring per pair is negative binomial with mean `number_offspring` and
    size `variance_offspring`.
    """
    half = config.population_size // 2
    males = pop['id'].to_numpy()[:half]
    females = pop['id'].to_numpy()[half:]
    if config.mating_success:
        mating = _mating_males(males, config.mating_fractions, rng)
        fathers = rng.choice(mating, size=half, replace=False)
    else:
        fathers = rng.permutation(males)
    mothers = rng.permutation(females)
    if r_map is None:
        r_map = make_recombination_map(config)

    chroms = dict(zip(pop['id'], zip(pop['chromosome1'], pop['chromosome2'])))
    size = config.variance_offspring
    p = size / (size + config.number_offspring)
    rows = []
    for father, mother in zip(fathers, mothers):
        n_off = int(rng.negative_binomial(size, p))
        for _ in range(n_off):
            rows.append({
                'id': f"p{pop_number}_g{generation}_{len(rows) + 1}",
                'sex': MALE if rng.random() < 0.5 else FEMALE,
                'pop': pop_number,
                'chromosome1': _gamete(chroms[father], config.recombination and config.recombination_males,
                                       config, r_map, rng),
                'chromosome2': _gamete(chroms[mother], config.recombination, config, r_map, rng),
                'father': father,
                'mother': mother,
            })
    return pd.DataFrame(rows, columns=POPULATION_COLUMNS)


# ----------------- selection -----------------
def fitness(chromosome1: str, chromosome2: str, reference: pd.DataFrame) -> float:
    """
    Product of per-locus survival probabilities at loci under selection.

    A homozygous deleterious locus has fitness 1 - s, a heterozygous locus
    1 - h*s. Neutral symbols are masked before scoring.
    """
    c1 = np.array(list(_NEUTRAL_MASK_RE.sub(NEUTRAL_SYMBOL, chromosome1)))
    c2 = np.array(list(_NEUTRAL_MASK_RE.sub(NEUTRAL_SYMBOL, chromosome2)))
    hom = ((c1 == c2) & (c1 == DELETERIOUS)).astype(float)
    het1 = ((c1 == DELETERIOUS) & (c2 == WILD_TYPE)).astype(float)
    het2 = ((c1 == WILD_TYPE) & (c2 == DELETERIOUS)).astype(float)
    h = reference['h'].to_numpy()
    s = reference['s'].to_numpy()
    locus_fitness = 1 - (h * s * het1 + h * s * het2 + s * hom)
    return float(np.prod(locus_fitness[locus_fitness < 1]))


def selection(offspring: pd.DataFrame, reference: pd.DataFrame, model: str = "relative",
              genetic_load: float = 0.8, rng: Optional[np.random.Generator] = None) -> pd.DataFrame:
    """
    Score offspring fitness and apply selection.

    'absolute' keeps individuals whose fitness exceeds a uniform deviate on
    [0, genetic_load]; 'relative' keeps everyone and adds relative_fitness
    (fitness over total fitness, negatives set to zero) for weighting the next
    generation.
    """
    if model not in SELECTION_MODELS:
        raise ValueError(f"model must be one of {SELECTION_MODELS}, got {model!r}")
    rng = rng or np.random.default_rng()
    out = offspring.copy()
    out['fitness'] = [fitness(c1, c2, reference) for c1, c2 in zip(out['chromosome1'], out['chromosome2'])]
    if model == "absolute":
        deviate = rng.uniform(0, genetic_load, size=len(out))
        out = out[out['fitness'].to_numpy() > deviate].reset_index(drop=True)
    else:
        total = out['fitness'].sum()
        rel = out['fitness'] / total if total > 0 else out['fitness'] * 0.0
        out['relative_fitness'] = rel.clip(lower=0)
    return out


def next_generation(offspring: pd.DataFrame, population_size: int, rng: np.random.Generator) -> pd.DataFrame:
    """
    Restore the fixed population size: population_size/2 males then as many females.

    Offspring are drawn without replacement, weighted by relative fitness when present.

    Raises:
        RuntimeError: If there are too few offspring of either sex
    """
    half = population_size // 2
    parts = []
    for sex in (MALE, FEMALE):
        pool = offspring[offspring['sex'] == sex]
        if 'relative_fitness' in pool.columns:
            w = pool['relative_fitness'].to_numpy(dtype=float)
            available = int((w > 0).sum())
        else:
            w = np.ones(len(pool))
            available = len(pool)
        if available < half:
            raise RuntimeError(f"Only {available} viable {sex.lower()} offspring for {half} places; "
                               "the population cannot be maintained")
        idx = rng.choice(len(pool), size=half, replace=False, p=w / w.sum())
        parts.append(pool.iloc[idx])
    return pd.concat(parts, ignore_index=True)[POPULATION_COLUMNS]


# ----------------- migration -----------------
def migration(population1: pd.DataFrame, population2: pd.DataFrame, generation: int, config: SimulationConfig,
              male_tran: bool, female_tran: bool,
              rng: np.random.Generator) -> Tuple[pd.DataFrame, pd.DataFrame, bool, bool]:
    """
    Swap individuals between two populations every `transfer_each_gen` generations.

    Swaps happen at the same row positions, so both populations keep their
    sex layout. With a single transfer the male and female flags flip after
    each event so the migrating sex alternates; with more, ceil(n/2) males and
    floor(n/2) females move.

    Returns:
        (population1, population2, male_tran, female_tran)
    """
    if generation == 1 or generation % config.transfer_each_gen != 0 or config.number_transfers == 0:
        return population1, population2, male_tran, female_tran
    half = config.population_size // 2
    n = config.number_transfers
    if n == 1:
        n_males, n_females = 1, 1
    else:
        n_males, n_females = math.ceil(n / 2), math.floor(n / 2)
    rows = []
    if male_tran:
        rows.extend(rng.choice(half, size=n_males, replace=False).tolist())
    if female_tran and n_females:
        rows.extend((half + rng.choice(half, size=n_females, replace=False)).tolist())
    p1 = population1.copy()
    p2 = population2.copy()
    if rows:
        idx = np.asarray(rows)
        for col in population1.columns:
            v1 = population1[col].to_numpy().copy()
            v2 = population2[col].to_numpy().copy()
            v1[idx], v2[idx] = population2[col].to_numpy()[idx], population1[col].to_numpy()[idx]
            p1[col] = v1
            p2[col] = v2
    if n == 1:
        male_tran, female_tran = not male_tran, not female_tran
    return p1, p2, male_tran, female_tran


# ----------------- output -----------------
def ped(individual: pd.Series) -> str:
    """Genotype columns of a PLINK ped line: the two alleles of each locus, space separated."""
    c1, c2 = individual['chromosome1'], individual['chromosome2']
    return ' '.join(f"{a} {b}" for a, b in zip(c1, c2))


def write_ped(population: pd.DataFrame, out_prefix: str, family: str = "1") -> Dict[str, str]:
    """Write PLINK `.ped` and `.map` files for a population."""
    ensure_dir(os.path.dirname(os.path.abspath(out_prefix)))
    ped_fp = out_prefix + '.ped'
    map_fp = out_prefix + '.map'
    with open(ped_fp, 'w') as fh:
        for _, ind in population.iterrows():
            sex = 1 if ind['sex'] == MALE else 2
            fh.write(f"{family} {ind['id']} {ind['father']} {ind['mother']} {sex} -9 {ped(ind)}\n")
    n_loci = len(population['chromosome1'].iloc[0]) if len(population) else 0
    with open(map_fp, 'w') as fh:
        for i in range(n_loci):
            fh.write(f"1 Locus_{i + 1} 0 {i + 1}\n")
    return {'ped': ped_fp, 'map': map_fp}


def _alternate_count(chars: np.ndarray) -> np.ndarray:
    return ((chars == DELETERIOUS) | (chars == NEUTRAL_ALLELES[1])).astype(float)


def population_to_genotypes(population: pd.DataFrame, reference: pd.DataFrame,
                            generation: Optional[int] = None,
                            exclude: Sequence[int] = (),
                            pop_labels: Optional[Sequence[str]] = None) -> GenotypeMatrix:
    """
    Convert chromosome strings to a SNP genotype matrix.

    The score is the number of 'a' (deleterious) or '2' (second neutral)
    alleles. Loci in `exclude` (multi-allelic loci) are left out. Population
    labels default to the source population of each individual.
    """
    excluded = set(exclude)
    keep = [i for i in range(len(reference)) if i not in excluded]
    c1 = np.array([list(s) for s in population['chromosome1']])[:, keep]
    c2 = np.array([list(s) for s in population['chromosome2']])[:, keep]
    g = _alternate_count(c1) + _alternate_count(c2)
    ind_metrics = population[['id', 'sex', 'pop', 'father', 'mother']].reset_index(drop=True)
    ind_metrics = ind_metrics.rename(columns={'pop': 'source_pop'})
    if generation is not None:
        ind_metrics['generation'] = generation
    if pop_labels is None:
        pop_labels = [f"pop{p}" for p in population['pop']]
    lm = reference.iloc[keep].reset_index(drop=True)
    x = GenotypeMatrix(
        genotypes=g,
        ind_names=population['id'].tolist(),
        loc_names=[f"Locus_{i + 1}" for i in keep],
        pop=list(pop_labels),
        datatype=SNP,
        loc_metrics=lm,
        ind_metrics=ind_metrics,
    )
    x.add_history("population_to_genotypes()")
    return x


# ----------------- driver -----------------
@dataclass
class SimulationResult:
    config: SimulationConfig
    reference: pd.DataFrame
    populations: List[pd.DataFrame]
    snapshots: List[GenotypeMatrix] = field(default_factory=list)


def run_simulation(config: SimulationConfig, verbose: Optional[int] = None) -> SimulationResult:
    """
    Run two populations forward for `config.generations` generations.

    Each generation every population reproduces, undergoes selection (when
    enabled) and is brought back to its fixed size; migration between the two
    populations follows. A genotype snapshot of both populations is kept every
    `config.snapshot_every` generations and after the last one.

    Returns:
        SimulationResult with the final populations and the snapshots
    """
    verbose = check_verbosity(verbose)
    flag_start("run_simulation", verbose)
    rng = np.random.default_rng(config.seed)
    reference = make_reference_table(config)
    r_map = make_recombination_map(config)
    pops = [initialise(i, config, reference, rng) for i in (1, 2)]
    male_tran, female_tran = config.male_transfer, config.female_transfer
    msats = list(config.msat_freqs)
    result = SimulationResult(config=config, reference=reference, populations=pops)

    for gen in range(1, config.generations + 1):
        for i, pop in enumerate(pops):
            offspring = reproduction(pop, i + 1, config, rng, r_map=r_map, generation=gen)
            if config.selection:
                offspring = selection(offspring, reference, model=config.selection_model,
                                      genetic_load=config.genetic_load, rng=rng)
            pops[i] = next_generation(offspring, config.population_size, rng)
        pops[0], pops[1], male_tran, female_tran = migration(pops[0], pops[1], gen, config,
                                                             male_tran, female_tran, rng)
        if gen % config.snapshot_every == 0 or gen == config.generations:
            both = pd.concat(pops, ignore_index=True)
            labels = [f"pop{i + 1}" for i, p in enumerate(pops) for _ in range(len(p))]
            result.snapshots.append(population_to_genotypes(both, reference, generation=gen, exclude=msats,
                                                            pop_labels=labels))
        if verbose >= 2:
            logger.info(f"  Generation {gen} of {config.generations} complete")

    result.populations = pops
    flag_end("run_simulation", verbose)
    return result
