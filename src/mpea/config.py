"""Configuration handling for the enrichment analysis."""

from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple, Union

import tomli
import tomli_w

from .exceptions import InvalidInput
from .stats import BROWNS_COVARIANCE, CORRECTION_METHODS, MERGE_METHODS


@dataclass(frozen=True)
class AnalysisOptions:
    """Options recognised by ``analyze``.

    Args:
        merge_method: 'brown' or 'fisher'
        cutoff: Maximum p-value for a gene to enter a ranking
        significant: Maximum adjusted p-value for a term to be reported
        correction_method: Multiple-testing correction applied across terms
        geneset_filter: (min_size, max_size) bounds on term size, or None.
            max_size may be None for no upper bound
        background: Explicit sampling universe; defaults to all genes in the terms
        return_all: Report every term instead of only significant ones
        num_workers: Worker processes used to test terms
        browns_covariance: 'kost' or 'empirical' covariance estimator.
            'kost' maps probit correlations to covariances with the
            Kost-McDermott polynomial. 'empirical' standardises each column
            and takes the covariance of -2 ln ECDF (the empirical Brown's
            method of Poole et al.); use it to match empirical Brown results
    """

    merge_method: str = "brown"
    cutoff: float = 0.1
    significant: float = 0.05
    correction_method: str = "holm"
    geneset_filter: Optional[Tuple[int, Optional[int]]] = (5, 1000)
    background: Optional[FrozenSet[str]] = None
    return_all: bool = False
    num_workers: int = 1
    browns_covariance: str = "kost"

    def __post_init__(self):
        if self.merge_method not in MERGE_METHODS:
            raise InvalidInput(f"merge_method must be one of {', '.join(MERGE_METHODS)}")
        if self.browns_covariance not in BROWNS_COVARIANCE:
            raise InvalidInput(f"browns_covariance must be one of {', '.join(BROWNS_COVARIANCE)}")
        if str(self.correction_method).lower() not in CORRECTION_METHODS:
            raise InvalidInput(f"Unknown correction method: {self.correction_method}")
        for name in ("cutoff", "significant"):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise InvalidInput(f"{name} must be a value in [0, 1], got {value}")
        if self.geneset_filter is not None:
            bounds = tuple(self.geneset_filter)
            if len(bounds) != 2:
                raise InvalidInput("geneset_filter must be a (min_size, max_size) pair")
            min_size, max_size = bounds
            if min_size is None:
                min_size = 0
            if min_size < 0 or (max_size is not None and max_size < min_size):
                raise InvalidInput(f"Invalid geneset_filter bounds: {bounds}")
            object.__setattr__(self, "geneset_filter", (int(min_size), max_size))
        if self.background is not None:
            object.__setattr__(self, "background", frozenset(self.background))
        if self.num_workers < 1:
            raise InvalidInput("num_workers must be at least 1")

    def with_background(self, genes: Iterable[str]) -> "AnalysisOptions":
        return replace(self, background=frozenset(genes))

    def to_dict(self) -> Dict[str, Any]:
        """Plain mapping suitable for TOML or JSON output."""
        options = asdict(self)
        options["background"] = sorted(self.background) if self.background is not None else None
        options["geneset_filter"] = list(self.geneset_filter) if self.geneset_filter is not None else None
        return options


# Keys of the [analysis] section that map straight onto AnalysisOptions
_ANALYSIS_KEYS = (
    "merge_method",
    "cutoff",
    "significant",
    "correction_method",
    "geneset_filter",
    "return_all",
    "num_workers",
    "browns_covariance",
)


class PipelineConfig:
    """Configuration class for the file-driven enrichment pipeline."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        try:
            with open(config_path, "rb") as f:
                self.config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except tomli.TOMLDecodeError as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        required_sections = ['input', 'output']
        missing_sections = [section for section in required_sections if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        self.input_files = self.config.get("input", {})

        required_input_files = ['scores_file', 'gene_sets_file']
        missing_files = [file for file in required_input_files if file not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        self.output_config = self.config.get("output", {})
        self.analysis_params = self.config.get("analysis", {})

        # Substitute for missing scores; None leaves them for analyze to reject
        self.fill_missing = self.input_files.get("fill_missing")

        unknown = sorted(set(self.analysis_params) - set(_ANALYSIS_KEYS))
        if unknown:
            raise ValueError(f"Unknown analysis parameters in configuration: {', '.join(unknown)}")

    def options(self, background: Optional[Iterable[str]] = None) -> AnalysisOptions:
        """Build the analysis options from the [analysis] section.

        Args:
            background: Optional background genes loaded from the input files

        Returns:
            Validated AnalysisOptions
        """
        params = dict(self.analysis_params)
        if "geneset_filter" in params and params["geneset_filter"] is not None:
            bounds = list(params["geneset_filter"])
            # TOML has no null, so a negative upper bound means unbounded
            if len(bounds) == 2 and bounds[1] is not None and bounds[1] < 0:
                bounds[1] = None
            params["geneset_filter"] = tuple(bounds)
        if background is not None:
            params["background"] = frozenset(background)
        return AnalysisOptions(**params)

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        base_path = Path(self.output_config.get("directory", "results"))
        if subdir:
            return base_path / subdir
        return base_path

    @property
    def cytoscape_prefix(self) -> Optional[str]:
        """File name prefix for the visualization files, or None when disabled."""
        if not self.output_config.get("cytoscape", False):
            return None
        return self.output_config.get("prefix", "")

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)
