"""Enrichment driver, evidence aggregation and the file-driven pipeline."""

import json
import logging
import os
import platform
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl
from tqdm.auto import tqdm

from .config import AnalysisOptions, PipelineConfig
from .cytoscape import write_cytoscape_files
from .data import (
    filter_gene_sets,
    load_background,
    load_scores,
    make_background,
    read_gmt,
    restrict_gene_sets,
    validate_scores,
    write_results,
)
from .exceptions import InvalidInput, NoSignificantResults
from .stats import adjust_p_values, leading_edge, merge_p_values, ordered_hypergeometric, rank_genes
from .structures import EnrichmentResult, Term
from .utils import ensure_dir

# Configure tqdm to work properly on macOS
is_mac = platform.system() == 'Darwin'
tqdm_kwargs = {
    'position': 0,
    'leave': False,
    'ncols': 100,
    'dynamic_ncols': True,
    'ascii': is_mac,
}

COMBINED = "combined"
GENES_PREFIX = "Genes_"

# (raw p-value, leading-edge genes) for one term tested against one ranking
TermTest = Tuple[float, Tuple[str, ...]]


def _test_gene_sets(
    ranked_genes: Sequence[str],
    gene_sets: Sequence[frozenset],
    background_size: int
) -> List[TermTest]:
    """
    Test a batch of terms against one ranking.
    Defined at module level so worker processes can unpickle it.

    Args:
        ranked_genes: Genes ordered from most to least significant
        gene_sets: Gene sets of the terms, restricted to the background
        background_size: Size of the sampling universe

    Returns:
        One (p-value, overlap) pair per term, in input order
    """
    results = []
    for term_genes in gene_sets:
        p_value, prefix = ordered_hypergeometric(ranked_genes, term_genes, background_size)
        results.append((p_value, leading_edge(ranked_genes, term_genes, prefix)))
    return results


def _chunk_bounds(n_items: int, n_chunks: int) -> List[Tuple[int, int]]:
    n_chunks = max(1, min(n_items, n_chunks))
    edges = np.linspace(0, n_items, n_chunks + 1).astype(int)
    return [(int(edges[i]), int(edges[i + 1])) for i in range(n_chunks)]


def enrichment_analysis(
    rankings: Sequence[Sequence[str]],
    gene_sets: Sequence[Term],
    background_size: int,
    num_workers: int = 1
) -> List[List[TermTest]]:
    """
    Run the ranked hypergeometric test for every term against every ranking.

    With more than one worker, each ranking is split into term batches that
    run in a process pool; results are reassembled in ranking and term order.

    Args:
        rankings: Ranked gene lists
        gene_sets: Terms restricted to the background
        background_size: Size of the sampling universe
        num_workers: Number of worker processes

    Returns:
        For each ranking, one (p-value, overlap) pair per term
    """
    logger = logging.getLogger(__name__)
    members = [term.gene_set for term in gene_sets]

    if num_workers <= 1 or not members:
        return [_test_gene_sets(ranking, members, background_size) for ranking in rankings]

    bounds = _chunk_bounds(len(members), num_workers)
    units = [(r, c) for r in range(len(rankings)) for c in range(len(bounds))]
    collected: Dict[Tuple[int, int], List[TermTest]] = {}
    failed = []

    logger.info(f"Testing {len(members)} terms against {len(rankings)} rankings using {num_workers} workers")
    with ProcessPoolExecutor(max_workers=num_workers) as executor:
        process_func = partial(_test_gene_sets, background_size=background_size)
        futures = {
            executor.submit(process_func, rankings[r], members[slice(*bounds[c])]): (r, c)
            for r, c in units
        }
        with tqdm(total=len(futures), desc="Testing terms", unit="batch", **tqdm_kwargs) as pbar:
            for future in as_completed(futures):
                unit = futures[future]
                try:
                    collected[unit] = future.result()
                except Exception as e:
                    logger.error(f"Error testing batch {unit}: {str(e)}")
                    failed.append(unit)
                pbar.update(1)

    if failed:
        logger.info(f"Retrying {len(failed)} failed batches sequentially")
        for r, c in failed:
            collected[(r, c)] = _test_gene_sets(rankings[r], members[slice(*bounds[c])], background_size)

    return [
        [test for c in range(len(bounds)) for test in collected[(r, c)]]
        for r in range(len(rankings))
    ]


def _prepare_inputs(
    scores: pl.DataFrame,
    gene_sets: Sequence[Term],
    options: AnalysisOptions
) -> Tuple[List[str], List[str], np.ndarray, List[Term]]:
    """Validate inputs and restrict scores and terms to the sampling universe."""
    logger = logging.getLogger(__name__)

    gene_sets = list(gene_sets)
    if not gene_sets:
        raise InvalidInput("No gene sets were provided")
    seen = set()
    duplicates = sorted({t.id for t in gene_sets if t.id in seen or seen.add(t.id)})
    if duplicates:
        raise InvalidInput(f"Duplicate term ids: {', '.join(duplicates)}")

    genes, columns, values = validate_scores(scores)
    if COMBINED in columns:
        raise InvalidInput(f"'{COMBINED}' is reserved and cannot be used as a dataset name")

    background = options.background if options.background is not None else make_background(gene_sets)
    keep = np.fromiter((g in background for g in genes), dtype=bool, count=len(genes))
    if not keep.any():
        raise InvalidInput("None of the scored genes are part of the background")
    if not keep.all():
        logger.info(f"Removed {int((~keep).sum())} scored genes that are not in the background")
    genes = [g for g, k in zip(genes, keep) if k]
    values = values[keep]

    universe = set(genes)
    gene_sets = restrict_gene_sets(gene_sets, universe)
    if options.geneset_filter is not None:
        gene_sets = filter_gene_sets(gene_sets, *options.geneset_filter)
    if not gene_sets:
        raise InvalidInput("No gene sets remain after filtering by background and size")

    logger.info(f"Analysing {len(genes)} genes across {len(columns)} datasets and {len(gene_sets)} gene sets")
    return genes, columns, values, gene_sets


def run_enrichment(
    scores: pl.DataFrame,
    gene_sets: Sequence[Term],
    options: Optional[AnalysisOptions] = None
) -> Tuple[List[EnrichmentResult], List[str]]:
    """
    Merge, rank, test and correct; the record-level form of ``analyze``.

    Args:
        scores: DataFrame with gene_id and one p-value column per dataset
        gene_sets: Terms to test
        options: Analysis options; defaults apply when omitted

    Returns:
        Tuple of (results in term order, dataset column names)
    """
    logger = logging.getLogger(__name__)
    options = options or AnalysisOptions()
    genes, columns, values, gene_sets = _prepare_inputs(scores, gene_sets, options)

    merged = merge_p_values(values, options.merge_method, browns_covariance=options.browns_covariance)
    rankings = [rank_genes(merged, genes, options.cutoff)]
    rankings.extend(rank_genes(values[:, j], genes, options.cutoff) for j in range(len(columns)))
    logger.debug(
        f"{len(rankings[0])} genes pass the cutoff after merging; per dataset: "
        + ", ".join(f"{c}={len(r)}" for c, r in zip(columns, rankings[1:]))
    )

    tested = enrichment_analysis(rankings, gene_sets, len(genes), options.num_workers)

    combined_p = np.array([p for p, _ in tested[0]])
    adjusted = adjust_p_values(combined_p, options.correction_method)
    column_adjusted = [
        adjust_p_values([p for p, _ in column_tests], options.correction_method)
        for column_tests in tested[1:]
    ]

    results = []
    for i, term in enumerate(gene_sets):
        detected = [column_adjusted[j][i] <= options.significant for j in range(len(columns))]
        evidence = tuple(c for c, hit in zip(columns, detected) if hit) or (COMBINED,)
        genes_by_column = {
            c: (tested[j + 1][i][1] if detected[j] else None)
            for j, c in enumerate(columns)
        }
        results.append(EnrichmentResult(
            term=term,
            combined_p=float(combined_p[i]),
            adjusted_p=float(adjusted[i]),
            overlap=tested[0][i][1],
            evidence=evidence,
            column_genes=genes_by_column,
        ))

    significant = [r for r in results if r.adjusted_p <= options.significant]
    logger.info(f"{len(significant)} of {len(results)} gene sets are significant at {options.significant}")
    if not significant:
        if not options.return_all:
            raise NoSignificantResults()
        logger.warning("No significant terms were found")

    return (results if options.return_all else significant), columns


def results_to_frame(results: Sequence[EnrichmentResult], columns: Sequence[str]) -> pl.DataFrame:
    """
    Assemble the result table.

    Args:
        results: Enrichment results in output order
        columns: Dataset column names

    Returns:
        DataFrame with term.id, term.name, term.size, adjusted.p.val, overlap,
        evidence and one Genes_<dataset> column per dataset
    """
    schema = {
        "term.id": pl.Utf8,
        "term.name": pl.Utf8,
        "term.size": pl.Int64,
        "adjusted.p.val": pl.Float64,
        "overlap": pl.List(pl.Utf8),
        "evidence": pl.List(pl.Utf8),
    }
    data = {
        "term.id": [r.term.id for r in results],
        "term.name": [r.term.name for r in results],
        "term.size": [r.term.size for r in results],
        "adjusted.p.val": [r.adjusted_p for r in results],
        "overlap": [list(r.overlap) for r in results],
        "evidence": [list(r.evidence) for r in results],
    }
    for column in columns:
        name = f"{GENES_PREFIX}{column}"
        schema[name] = pl.List(pl.Utf8)
        data[name] = [
            None if r.genes_by_column.get(column) is None else list(r.genes_by_column[column])
            for r in results
        ]
    return pl.DataFrame(data, schema=schema)


def analyze(
    scores: pl.DataFrame,
    gene_sets: Sequence[Term],
    options: Optional[AnalysisOptions] = None
) -> pl.DataFrame:
    """
    Integrative pathway enrichment over a gene-by-dataset p-value matrix.

    P-values are merged per gene across datasets, genes are ranked by the
    merged p-value, and every gene set is tested with the ranked
    hypergeometric test. The same test on each dataset's own ranking
    determines which datasets support a significant gene set.

    Args:
        scores: DataFrame with gene_id and one p-value column per dataset
        gene_sets: Terms to test
        options: Analysis options; defaults apply when omitted

    Returns:
        Result table, one row per reported gene set
    """
    results, columns = run_enrichment(scores, gene_sets, options)
    return results_to_frame(results, columns)


class EnrichmentPipeline:
    """Main class for running enrichment analysis from a configuration file."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the pipeline with a configuration file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config = PipelineConfig(config_path)
        self.logger = logging.getLogger(__name__)
        self.results: Optional[pl.DataFrame] = None
        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        self.logger.debug("Starting to load input data files")

        for file_key, file_path in self.config.input_files.items():
            if not file_key.endswith("_file"):
                continue
            if isinstance(file_path, (str, bytes, os.PathLike)) and not Path(file_path).is_file():
                error_msg = f"Input file not found: {file_path} (specified as {file_key})"
                self.logger.error(error_msg)
                raise FileNotFoundError(error_msg)

        self.scores = load_scores(
            self.config.input_files['scores_file'],
            fill_missing=self.config.fill_missing
        )
        self.gene_sets = read_gmt(self.config.input_files['gene_sets_file'])
        self.background = load_background(self.config.input_files.get('background_file'))
        self.options = self.config.options(background=self.background)

        if self.background is not None:
            self.logger.info(f"Loaded {len(self.background)} background genes")
        self.logger.debug("Finished loading input data files")

    def run(self) -> pl.DataFrame:
        """Run the enrichment analysis."""
        self.logger.info("Starting enrichment analysis pipeline")
        start_time = time.time()

        self.results = analyze(self.scores, self.gene_sets, self.options)

        elapsed_time = time.time() - start_time
        self.logger.info(f"Pipeline completed in {elapsed_time:.2f} seconds")
        return self.results

    def save_results(self, output_dir: Optional[Union[str, Path]] = None) -> Optional[Path]:
        """Save the result table, the configuration and any visualization files.

        Args:
            output_dir: Directory to write to; defaults to the configured one

        Returns:
            Path of the output directory, or None when there was nothing to save
        """
        if self.results is None:
            self.logger.warning("No results to save. Run the pipeline first.")
            return None

        output_path = ensure_dir(Path(output_dir) if output_dir else self.config.get_output_path())

        results_file = output_path / 'enrichment_results.csv'
        write_results(self.results, results_file)
        self.logger.info(f"Saved results to {results_file}")

        config_file = output_path / 'pipeline_config.json'
        with open(config_file, 'w') as f:
            json.dump({
                'input': {k: str(v) for k, v in self.config.input_files.items()},
                'analysis': self.options.to_dict(),
            }, f, indent=2, default=str)
        self.logger.info(f"Saved configuration to {config_file}")

        prefix = self.config.cytoscape_prefix
        if prefix is not None:
            write_cytoscape_files(
                self.results,
                self.gene_sets,
                output_path,
                prefix=prefix,
                significant=self.options.significant
            )

        return output_path
