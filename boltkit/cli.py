#!/usr/bin/env python3
"""
bbolt-dump - Command Line Interface for printing the contents of a bolt database.
"""

import argparse
import logging
import sys

from pydantic import ValidationError

from boltkit.dump import DumpConfig, run_dump
from boltkit.exceptions import BoltKitError
from boltkit.registry import CONTAINERD, default_registry

log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO", log_file: str = None):
    """Sends log records to stderr, and to `log_file` when given. Stdout carries the dump."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=log_format, handlers=handlers, force=True)


def build_parser(schema_names) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='bbolt-dump',
        description='Print every bucket and key/value of a bolt database',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Dump containerd's metadata store
  bbolt-dump dump /var/lib/containerd/io.containerd.metadata.v1.bolt/meta.db

  # Dump without decoding values
  bbolt-dump dump --schema raw meta.db

  # List the known schemas
  bbolt-dump schemas
        """
    )
    subparsers = parser.add_subparsers(dest='command')

    dump = subparsers.add_parser('dump', help='dump all buckets and key/values')
    dump.add_argument('db_path', nargs='?', default='', metavar='<boltdb file>',
                      help='Path to the bolt database')
    dump.add_argument('--schema', type=str, default=None,
                      help=f"Schema used to decode values: {', '.join(schema_names)} "
                           f"(default: {CONTAINERD})")
    dump.add_argument('--no-copy', action='store_true',
                      help='Read the file in place instead of from a private copy')
    dump.add_argument('--log-file', type=str, default=None,
                      help='Also write log messages to this file')
    dump.add_argument('-v', '--verbose', action='store_true',
                      help='Enable debug logging')

    subparsers.add_parser('schemas', help='list the known schemas')
    return parser


def main(argv=None) -> int:
    """Main function to handle command line execution. Returns the exit status."""
    registry = default_registry()
    parser = build_parser(registry.names())
    args = parser.parse_args(argv)

    if args.command == 'schemas':
        for name in registry.names():
            print(name)
        return 0

    if args.command != 'dump':
        parser.print_help(sys.stderr)
        return 1

    if not args.db_path:
        configure_logging()
        logging.error("boltdb file need to be specified")
        return 1

    settings = {
        'db_path': args.db_path,
        'copy_source': not args.no_copy,
        'log_file': args.log_file,
        'log_level': 'DEBUG' if args.verbose else 'INFO',
    }
    if args.schema is not None:
        settings['schema_name'] = args.schema

    try:
        config = DumpConfig(**settings)
    except ValidationError as e:
        configure_logging()
        logging.error(f"Invalid arguments: {e}")
        return 1

    configure_logging(config.log_level, config.log_file)

    try:
        run_dump(config, registry=registry, stream=sys.stdout)
    except BoltKitError as e:
        logging.error(f"Dump failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
