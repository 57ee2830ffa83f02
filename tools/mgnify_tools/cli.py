#!/usr/bin/env python
# mgnify_tools/cli.py

import argparse
import logging
import sys
import traceback

from .bootstrap import MissingPackagesError, ensure_packages
from .logger import log_print, setup_logger

STEPS = ["all", "fetch", "diversity", "differential"]


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Fetch MGnify study results and run diversity and differential abundance analyses"
    )

    parser.add_argument(
        "--config",
        default=None,
        help="Path to configuration file (YAML). Defaults are used when omitted"
    )

    parser.add_argument(
        "--step",
        choices=STEPS,
        default="all",
        help="Workflow step to run (default: all)"
    )

    parser.add_argument(
        "--no-install",
        action="store_true",
        help="Do not try to pip install missing packages"
    )

    parser.add_argument(
        "--log-file",
        default=None,
        help="Path to log file (default: log to console only)"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)"
    )

    return parser.parse_args(argv)


def run_step(step, config):
    """Run one workflow step (or all of them) with a loaded configuration."""
    from . import workflow

    if step == "all":
        return workflow.run_tutorial(config)

    if step == "fetch":
        return workflow.fetch_study_data(config)

    table, metadata_df = workflow.load_study_data(config)
    counts_df, abundance_df = workflow.prepare_tables(table, config)

    if step == "diversity":
        return workflow.run_diversity_analysis(counts_df, abundance_df, metadata_df, config)
    return workflow.run_differential_abundance(counts_df, abundance_df, metadata_df, config)


def main(argv=None):
    args = parse_arguments(argv)

    setup_logger(log_file=args.log_file, log_level=getattr(logging, args.log_level))
    log_print(f"Starting MGnify workflow step: {args.step}")

    # The analysis stack is only imported once the bootstrap has loaded it
    try:
        ensure_packages(install_missing=not args.no_install)
    except MissingPackagesError as e:
        log_print(str(e), level="error")
        return 1

    from .config import load_config

    try:
        config = load_config(args.config)
        run_step(args.step, config)
    except Exception as e:
        log_print(f"Error during {args.step} step: {e}", level="error")
        log_print(traceback.format_exc(), level="debug")
        return 1

    log_print(f"Step '{args.step}' completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
