#!/usr/bin/env python3
"""
VAT Extraction Pipeline - Main Entry Point.

This is the main entry point for the VAT extraction pipeline.
It provides both a command-line interface and programmatic access
to the extraction pipeline.

Usage:
    Command Line:
        python main.py --input receipt.pdf --category purchases
        python main.py --input ./sales/ --category sales --backend layoutlm

    Python:
        from main import run_extraction
        results = run_extraction("receipt.pdf", category="purchases")

Author: ML Engineering Team
Version: 1.0.0
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, List, Dict, Any

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

# Import project modules
from config import ConfigurationManager, get_config
from vat_extraction import ExtractionPipeline
from vat_extraction.documents import Category
from vat_extraction.input_handler import SUPPORTED_MEDIA_TYPES
from vat_extraction.model_inference import SUPPORTED_BACKENDS
from vat_extraction.utils.exceptions import VATExtractionError
from vat_extraction.utils.helpers import guess_media_type
from vat_extraction.utils.logger import ROOT_LOGGER_NAME, setup_logger_from_config, get_logger


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        description="VAT Extraction Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    Process single receipt:
        python main.py --input receipt.pdf --category purchases

    Process directory of sales exports:
        python main.py --input ./sales/ --category sales

    Keep responses the parser could not read:
        python main.py --input ./receipts/ --category purchases --export-parse-failures
        """
    )

    # Input arguments
    parser.add_argument(
        "--input", "-i",
        type=str,
        required=True,
        help="Input file or directory containing documents"
    )

    parser.add_argument(
        "--category",
        type=str,
        default=Category.PURCHASES.value,
        choices=[c.value for c in Category],
        help="Declared document category (default: purchases)"
    )

    # Processing options
    parser.add_argument(
        "--priority",
        type=int,
        default=0,
        help="Queue priority; higher runs first (default: 0)"
    )

    parser.add_argument(
        "--backend",
        type=str,
        default=None,
        choices=sorted(SUPPORTED_BACKENDS),
        help="Vision backend (default: vision.backend from the configuration)"
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to custom configuration file"
    )

    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-extract even when a cached result exists"
    )

    parser.add_argument(
        "--export-parse-failures",
        nargs="?",
        const="",
        default=None,
        metavar="PATH",
        help="Write unreadable model responses to a YAML file (default: paths.parse_failures)"
    )

    # Logging options
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Only print the extraction results"
    )

    return parser.parse_args(argv)


def initialize_system(args: argparse.Namespace) -> ConfigurationManager:
    """
    Initialize the pipeline configuration and logging.

    Args:
        args: Parsed command-line arguments.

    Returns:
        Initialized configuration manager.
    """
    # Load configuration
    config = ConfigurationManager(args.config)

    # Setup logging
    logger = setup_logger_from_config()

    if args.debug:
        logging.getLogger(ROOT_LOGGER_NAME).setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger(ROOT_LOGGER_NAME).setLevel(logging.WARNING)

    logger.info("=" * 60)
    logger.info("VAT EXTRACTION PIPELINE")
    logger.info("=" * 60)
    logger.info(f"Version: {config.get('project.version', '1.0.0')}")
    logger.info(f"Input: {args.input}")
    logger.info(f"Category: {args.category}")

    return config


def validate_inputs(args: argparse.Namespace) -> List[Path]:
    """
    Validate input files/directories and return list of files to process.

    Args:
        args: Parsed command-line arguments.

    Returns:
        List of valid input file paths.

    Raises:
        FileNotFoundError: If input path doesn't exist.
        ValueError: If a single input file has an unsupported type.
    """
    logger = get_logger(__name__)
    input_path = Path(args.input)

    if not input_path.exists():
        raise FileNotFoundError(f"Input path not found: {input_path}")

    if input_path.is_file():
        if guess_media_type(input_path) in SUPPORTED_MEDIA_TYPES:
            return [input_path]
        raise ValueError(f"Unsupported file type: {input_path.suffix}")

    if input_path.is_dir():
        files = [
            path for path in input_path.iterdir()
            if path.is_file() and guess_media_type(path) in SUPPORTED_MEDIA_TYPES
        ]
        if not files:
            logger.warning(f"No supported files found in: {input_path}")
        else:
            logger.info(f"Found {len(files)} files to process")
        return sorted(files)

    raise ValueError(f"Invalid input path: {input_path}")


def run_extraction(
    input_path: str,
    category: str = Category.PURCHASES.value,
    priority: int = 0,
    backend: Optional[str] = None,
    config_path: Optional[str] = None,
    force_refresh: bool = False,
    parse_failures_path: Optional[str] = None,
    timeout: Optional[float] = None
) -> Dict[str, Any]:
    """
    Run the extraction pipeline over a file or directory.

    Args:
        input_path: Document file or directory.
        category: Declared category of every document.
        priority: Queue priority of the submitted jobs.
        backend: Vision backend name.
        config_path: Custom configuration file.
        force_refresh: Bypass cached results.
        parse_failures_path: Where to export unreadable model responses.
        timeout: Seconds to wait for each job.

    Returns:
        Dictionary with per-file results and the monitoring snapshot.
    """
    logger = get_logger(__name__)
    path = Path(input_path)
    files = [path] if path.is_file() else sorted(p for p in path.iterdir() if p.is_file())

    results: Dict[str, Any] = {'documents': {}, 'monitoring': {}}

    with ExtractionPipeline.from_config(config_path, backend=backend) as pipeline:
        receipts = {}
        for file_path in files:
            media_type = guess_media_type(file_path)
            if media_type not in SUPPORTED_MEDIA_TYPES:
                logger.warning(f"Skipping unsupported file: {file_path.name}")
                continue
            try:
                receipts[file_path.name] = pipeline.submit(
                    file_path.read_bytes(),
                    media_type,
                    category,
                    priority=priority,
                    force_refresh=force_refresh,
                    filename=file_path.name,
                )
            except VATExtractionError as e:
                logger.error(f"Rejected {file_path.name}: {e}")
                results['documents'][file_path.name] = {'status': 'rejected', 'error': str(e)}

        for name, receipt in receipts.items():
            if receipt.status == 'cached':
                results['documents'][name] = {
                    'status': 'cached',
                    'document_id': receipt.document_id,
                    'result': receipt.cached_result.to_dict(include_candidates=False),
                }
                continue
            try:
                pipeline.wait_for(receipt.job_id, timeout=timeout)
            except TimeoutError:
                logger.error(f"Timed out waiting for {name}")
            results['documents'][name] = pipeline.job_status(receipt.job_id)

        results['monitoring'] = pipeline.get_monitoring()
        if parse_failures_path:
            pipeline.monitor.export_parse_failures(parse_failures_path)

    return results


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main function - entry point for command-line execution.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    try:
        # Parse command-line arguments
        args = parse_arguments(argv)

        # Initialize system
        initialize_system(args)
        logger = get_logger(__name__)

        if args.export_parse_failures == "":
            args.export_parse_failures = get_config(
                "paths.parse_failures", "outputs/parse_failures.yaml"
            )

        # Validate inputs
        input_files = validate_inputs(args)

        if not input_files:
            logger.error("No files to process")
            return 1

        # Run extraction
        results = run_extraction(
            input_path=args.input,
            category=args.category,
            priority=args.priority,
            backend=args.backend,
            force_refresh=args.force,
            parse_failures_path=args.export_parse_failures,
        )

        print(json.dumps(results['documents'], indent=2, default=str))
        if not args.quiet:
            print(json.dumps(results['monitoring'], indent=2, default=str))

        failed = [
            name for name, status in results['documents'].items()
            if status is None or status.get('status') in ('failed', 'rejected')
        ]

        logger.info("=" * 60)
        logger.info(
            f"Extraction complete. Processed {len(input_files)} files, {len(failed)} failed."
        )
        logger.info("=" * 60)

        return 1 if failed else 0

    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 130

    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        if "--debug" in sys.argv:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
