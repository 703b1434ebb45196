"""Main application entry point."""

import argparse
import logging
import sys


def setup_logging(verbose: bool = False):
    """
    Set up logging configuration.

    Args:
        verbose: Enable verbose logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
        ],
    )


def cmd_download(args):
    """Handle download subcommand - process one or more config files."""
    setup_logging(args.verbose)
    from weathermap.cli import run_cli

    config_files = args.config if isinstance(args.config, list) else [args.config]
    total_files = len(config_files)
    failed_files = []
    successful_files = []

    # Process each config file sequentially
    for idx, config_path in enumerate(config_files, 1):
        if total_files > 1:
            logging.info(f"Processing config {idx}/{total_files}: {config_path}")

        try:
            exit_code = run_cli(config_path)
        except KeyboardInterrupt:
            logging.warning(f"✗ Interrupted while processing: {config_path}")
            failed_files.append(config_path)
            break

        if exit_code == 0:
            successful_files.append(config_path)
            if total_files > 1:
                logging.info(f"✓ Successfully processed: {config_path}")
        else:
            failed_files.append(config_path)
            logging.error(f"✗ Failed to process: {config_path}")

            # Stop processing remaining files if --stop-on-error flag is set
            if args.stop_on_error:
                logging.error("Stopping due to --stop-on-error flag")
                break

    # Print summary if multiple files were processed
    if total_files > 1:
        logging.info("Processing Summary")
        logging.info(f"Total configs: {total_files}")
        logging.info(f"Successful:    {len(successful_files)}")
        logging.info(f"Failed:        {len(failed_files)}")
        for config in failed_files:
            logging.info(f"  ✗ {config}")

    # Return non-zero exit code if any files failed
    return 1 if failed_files else 0


def cmd_products(args):
    """Handle products subcommand - list the products of a service."""
    setup_logging(args.verbose)
    from weathermap.cli import run_products

    return run_products(args.service, args.config)


def cmd_list_services(args):
    """Handle list-services subcommand."""
    from weathermap.core.config import SERVICES

    print("Available map services:")
    print()

    for key, service in SERVICES.items():
        print(f"  {key:10} - {service.display_name}")
        if service.description:
            print(f"               {service.description}")
        print(f"               Kind: {service.kind.upper()}, URL: {service.address}")
        print(
            f"               Delay: {service.response_delay_seconds}s, "
            f"polling floor: {service.min_polling_period_seconds}s"
        )
        print()

    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        description="Weather map client - fetch time-varying raster products from WMS and REST map services",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Download subcommand
    download_parser = subparsers.add_parser("download", help="Download product composites and legends")
    download_parser.add_argument("config", nargs="+", help="YAML configuration file(s) to process")
    download_parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    download_parser.add_argument(
        "--stop-on-error", action="store_true", help="Stop processing remaining configs if one fails"
    )
    download_parser.set_defaults(func=cmd_download)

    # Products subcommand
    products_parser = subparsers.add_parser("products", help="List the products a service offers")
    products_parser.add_argument("service", help="Service name (see list-services)")
    products_parser.add_argument("-c", "--config", help="YAML configuration file with additional services")
    products_parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    products_parser.set_defaults(func=cmd_products)

    # List services subcommand
    list_parser = subparsers.add_parser("list-services", help="List built-in map services")
    list_parser.set_defaults(func=cmd_list_services)

    return parser


def main():
    """Main application entry point."""
    parser = build_parser()
    args = parser.parse_args()

    # No subcommand: show usage
    if args.command is None:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
