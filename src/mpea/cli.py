#!/usr/bin/env python3
"""
Command line interface for the enrichment pipeline.
"""

import argparse
import logging
import sys
from pathlib import Path

import tomli
from tomli_w import dump

from .exceptions import NoSignificantResults
from .pipeline import EnrichmentPipeline
from .utils import setup_logging


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run integrative pathway enrichment analysis"
    )

    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )

    input_group = parser.add_argument_group("Input file overrides")
    input_group.add_argument(
        "--scores",
        type=str,
        help="Override score matrix file path"
    )
    input_group.add_argument(
        "--gene-sets",
        type=str,
        help="Override GMT file path"
    )
    input_group.add_argument(
        "--background",
        type=str,
        help="Override background genes file path"
    )

    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--output-dir",
        type=str,
        help="Override output directory"
    )
    output_group.add_argument(
        "--cytoscape",
        action="store_true",
        help="Write Cytoscape EnrichmentMap files"
    )

    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--merge-method",
        choices=["brown", "fisher"],
        help="Override p-value merging method"
    )
    analysis_group.add_argument(
        "--cutoff",
        type=float,
        help="Override maximum merged p-value for ranked genes"
    )
    analysis_group.add_argument(
        "--significant",
        type=float,
        help="Override adjusted p-value threshold"
    )
    analysis_group.add_argument(
        "--correction-method",
        type=str,
        help="Override multiple-testing correction method"
    )
    analysis_group.add_argument(
        "--return-all",
        action="store_true",
        help="Report all gene sets, not only significant ones"
    )
    analysis_group.add_argument(
        "--num-workers",
        type=int,
        help="Override number of worker processes"
    )

    return parser.parse_args(argv)


def update_config(config: dict, args: argparse.Namespace):
    """Update configuration with command line overrides."""
    config.setdefault('input', {})
    config.setdefault('output', {})
    config.setdefault('analysis', {})

    if args.scores:
        config['input']['scores_file'] = args.scores
    if args.gene_sets:
        config['input']['gene_sets_file'] = args.gene_sets
    if args.background:
        config['input']['background_file'] = args.background

    if args.output_dir:
        config['output']['directory'] = args.output_dir
    if args.cytoscape:
        config['output']['cytoscape'] = True

    if args.merge_method:
        config['analysis']['merge_method'] = args.merge_method
    if args.cutoff is not None:
        config['analysis']['cutoff'] = args.cutoff
    if args.significant is not None:
        config['analysis']['significant'] = args.significant
    if args.correction_method:
        config['analysis']['correction_method'] = args.correction_method
    if args.return_all:
        config['analysis']['return_all'] = True
    if args.num_workers:
        config['analysis']['num_workers'] = args.num_workers

    return config


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        print(f"Error loading configuration file: {str(e)}")
        sys.exit(1)

    config = update_config(config, args)

    output_dir = Path(config['output'].get('directory', 'results'))
    setup_logging(output_dir / 'logs')

    logging.info("Starting enrichment analysis pipeline")
    logging.info(f"Using configuration file: {args.config_file}")

    temp_config_path = Path(args.config_file).parent / "temp_config.toml"
    with open(temp_config_path, 'wb') as f:
        dump(config, f)

    try:
        pipeline = EnrichmentPipeline(str(temp_config_path))
        pipeline.run()
        pipeline.save_results()
        logging.info("Pipeline execution completed successfully")
    except NoSignificantResults as e:
        logging.error(str(e))
        sys.exit(1)
    except Exception as e:
        logging.error(f"Pipeline execution failed: {str(e)}")
        sys.exit(1)
    finally:
        temp_config_path.unlink()


if __name__ == "__main__":
    main()
