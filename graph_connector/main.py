"""
Command-line entry point for the Graph connector.

Loads configuration, sets up logging and runs one connector operation:
a connection test, a schema dump or a search.
"""

import sys
import json
import logging
import argparse
from typing import Any, Dict, List, Optional, TextIO

from graph_connector.config import ConfigurationError, load_config
from graph_connector.connector import MSGraphConnector
from graph_connector.exceptions import ConnectorError, GraphAPIError
from graph_connector.logging_setup import setup_logging
from graph_connector.objects import (
    Attribute,
    ConnectorObject,
    EqualsFilter,
    ObjectClass,
    OperationOptions,
    StartsWithFilter,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIGURATION_ERROR = 2
EXIT_PROVIDER_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


class ConnectorRunner:
    """
    Runs a single connector command and maps failures to exit codes.

    Exit codes: 0 success, 2 configuration error, 3 Graph error,
    4 any other error.
    """

    def __init__(self, config_path: Optional[str] = None, output: TextIO = None):
        self.config_path = config_path
        self.output = output or sys.stdout
        self.config = None

    def run(self, args: argparse.Namespace) -> int:
        try:
            self.config = load_config(self.config_path)
            setup_logging(self.config.get('logging', {}))

            with MSGraphConnector(self.config) as connector:
                if args.command == 'test':
                    connector.test()
                    self._write({'status': 'ok'})
                elif args.command == 'schema':
                    self._write(connector.schema().to_dict(), indent=2)
                elif args.command == 'search':
                    self._search(connector, args)
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION_ERROR
        except GraphAPIError as e:
            logger.error(f"Graph error: {e}")
            print(f"Graph error: {e}", file=sys.stderr)
            return EXIT_PROVIDER_ERROR
        except ConnectorError as e:
            logger.error(f"Connector error: {e}")
            print(f"Connector error: {e}", file=sys.stderr)
            return EXIT_UNEXPECTED_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            print(f"Unexpected error: {e}", file=sys.stderr)
            return EXIT_UNEXPECTED_ERROR

    def _search(self, connector: MSGraphConnector, args: argparse.Namespace):
        query = None
        if args.filter_attr:
            filter_class = StartsWithFilter if args.starts_with else EqualsFilter
            query = filter_class(Attribute(args.filter_attr, [args.filter_value]))

        options = OperationOptions(attributes_to_get=args.attributes or None, page_size=args.page_size)
        remaining = [args.limit]

        def handler(obj: ConnectorObject) -> bool:
            if remaining[0] is None:
                self._write(_object_to_dict(obj))
                return True
            if remaining[0] <= 0:
                return False
            remaining[0] -= 1
            self._write(_object_to_dict(obj))
            return remaining[0] > 0

        connector.execute_query(ObjectClass(args.object_class), query, handler, options)

    def _write(self, data: Any, indent: Optional[int] = None):
        self.output.write(json.dumps(data, indent=indent, default=str) + '\n')


def _object_to_dict(obj: ConnectorObject) -> Dict[str, Any]:
    return {
        'objectClass': obj.object_class.name,
        'uid': obj.uid.value,
        'name': obj.name,
        'attributes': {name: list(attr.values) for name, attr in obj.attributes.items()},
    }


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Microsoft Graph identity connector')
    parser.add_argument('--config', '-c', help='Path to configuration file')

    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('test', help='Test the connection to Microsoft Graph')
    subparsers.add_parser('schema', help='Print the connector schema as JSON')

    search = subparsers.add_parser('search', help='Search users or groups')
    search.add_argument('--object-class', '-o', default=ObjectClass.ACCOUNT_NAME,
                        help='Object class to search (__ACCOUNT__ or __GROUP__)')
    search.add_argument('--filter-attr', help='Attribute to filter on')
    search.add_argument('--filter-value', help='Value to match')
    search.add_argument('--starts-with', action='store_true',
                        help='Match values starting with --filter-value instead of equal to it')
    search.add_argument('--attributes', nargs='*', help='Attributes to return')
    search.add_argument('--page-size', type=int, help='Objects fetched per Graph request')
    search.add_argument('--limit', type=_positive_int, help='Stop after this many objects')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'search' and bool(args.filter_attr) != bool(args.filter_value):
        parser.error('--filter-attr and --filter-value must be used together')

    runner = ConnectorRunner(config_path=args.config)
    sys.exit(runner.run(args))


if __name__ == "__main__":
    main()
