#!/usr/bin/env python3
"""
Tests for the command-line runner: command dispatch, JSON output and
exit codes.
"""

import io
import os
import sys
import json
import unittest
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from graph_connector.config import ConfigurationError
from graph_connector.exceptions import GraphAPIError, UnsupportedObjectClassError
from graph_connector.main import (
    EXIT_CONFIGURATION_ERROR,
    EXIT_OK,
    EXIT_PROVIDER_ERROR,
    EXIT_UNEXPECTED_ERROR,
    ConnectorRunner,
    build_parser,
    main,
)
from graph_connector.objects import (
    Attribute,
    ConnectorObject,
    EqualsFilter,
    ObjectClass,
    StartsWithFilter,
    Uid,
)
from graph_connector.schema import AttributeInfo, ObjectClassInfo, Schema


class TestConnectorRunner(unittest.TestCase):

    def setUp(self):
        self.config = {'graph': {'tenant_id': 't'}, 'logging': {'level': 'INFO'}}

        load_patcher = patch('graph_connector.main.load_config', return_value=self.config)
        self.mock_load_config = load_patcher.start()
        self.addCleanup(load_patcher.stop)

        logging_patcher = patch('graph_connector.main.setup_logging')
        self.mock_setup_logging = logging_patcher.start()
        self.addCleanup(logging_patcher.stop)

        connector_patcher = patch('graph_connector.main.MSGraphConnector')
        self.mock_connector_class = connector_patcher.start()
        self.addCleanup(connector_patcher.stop)
        self.connector = MagicMock()
        self.mock_connector_class.return_value.__enter__.return_value = self.connector

        self.output = io.StringIO()
        self.runner = ConnectorRunner('config.yaml', output=self.output)
        self.parser = build_parser()

    def run_command(self, *argv):
        return self.runner.run(self.parser.parse_args(list(argv)))

    def output_lines(self):
        return [json.loads(line) for line in self.output.getvalue().splitlines()]

    def test_test_command(self):
        self.assertEqual(self.run_command('test'), EXIT_OK)

        self.mock_load_config.assert_called_once_with('config.yaml')
        self.mock_setup_logging.assert_called_once_with({'level': 'INFO'})
        self.mock_connector_class.assert_called_once_with(self.config)
        self.connector.test.assert_called_once_with()
        self.assertEqual(self.output_lines(), [{'status': 'ok'}])

    def test_schema_command(self):
        info = ObjectClassInfo('__GROUP__', {'members': AttributeInfo('members', multi_valued=True)})
        self.connector.schema.return_value = Schema({'__GROUP__': info})

        self.assertEqual(self.run_command('schema'), EXIT_OK)

        data = json.loads(self.output.getvalue())
        self.assertTrue(data['__GROUP__'][0]['multiValued'])

    def test_search_command(self):
        def execute_query(object_class, query, handler, options):
            for i in range(3):
                obj = ConnectorObject(object_class, Uid(f'g{i}'), f'Group {i}',
                                      {'__NAME__': Attribute('__NAME__', [f'Group {i}'])})
                if handler(obj) is False:
                    break

        self.connector.execute_query.side_effect = execute_query

        code = self.run_command('search', '-o', '__GROUP__', '--filter-attr', '__NAME__',
                                '--filter-value', 'Group', '--starts-with',
                                '--attributes', '__NAME__', '--page-size', '25', '--limit', '2')

        self.assertEqual(code, EXIT_OK)
        object_class, query, _, options = self.connector.execute_query.call_args[0]
        self.assertEqual(object_class, ObjectClass.GROUP)
        self.assertEqual(query, StartsWithFilter(Attribute('__NAME__', ['Group'])))
        self.assertEqual(options.attributes_to_get, ['__NAME__'])
        self.assertEqual(options.page_size, 25)
        self.assertEqual(self.output_lines(), [
            {'objectClass': '__GROUP__', 'uid': 'g0', 'name': 'Group 0', 'attributes': {'__NAME__': ['Group 0']}},
            {'objectClass': '__GROUP__', 'uid': 'g1', 'name': 'Group 1', 'attributes': {'__NAME__': ['Group 1']}},
        ])

    def test_search_equals_without_limit(self):
        self.run_command('search', '--filter-attr', 'mail', '--filter-value', 'a@contoso.com')

        object_class, query, handler, options = self.connector.execute_query.call_args[0]
        self.assertEqual(object_class, ObjectClass.ACCOUNT)
        self.assertEqual(query, EqualsFilter(Attribute('mail', ['a@contoso.com'])))
        self.assertIsNone(options.attributes_to_get)
        self.assertTrue(handler(ConnectorObject(ObjectClass.ACCOUNT, Uid('u1'), 'a', {})))

    def test_search_with_exhausted_limit_writes_nothing(self):
        args = self.parser.parse_args(['search'])
        args.limit = 0

        self.runner.run(args)

        handler = self.connector.execute_query.call_args[0][2]
        self.assertFalse(handler(ConnectorObject(ObjectClass.ACCOUNT, Uid('u1'), 'a', {})))
        self.assertEqual(self.output.getvalue(), '')

    def test_configuration_error(self):
        self.mock_load_config.side_effect = ConfigurationError('Missing required Graph field: client_id')
        self.assertEqual(self.run_command('test'), EXIT_CONFIGURATION_ERROR)
        self.mock_connector_class.assert_not_called()

    def test_graph_error(self):
        self.connector.test.side_effect = GraphAPIError('Insufficient privileges', 403, '/v1.0/organization')
        self.assertEqual(self.run_command('test'), EXIT_PROVIDER_ERROR)

    def test_connector_error(self):
        self.connector.execute_query.side_effect = UnsupportedObjectClassError('Unsupported object class x')
        self.assertEqual(self.run_command('search', '-o', 'x'), EXIT_UNEXPECTED_ERROR)

    def test_unexpected_error(self):
        self.connector.schema.side_effect = RuntimeError('boom')
        self.assertEqual(self.run_command('schema'), EXIT_UNEXPECTED_ERROR)


class TestMain(unittest.TestCase):

    @patch('graph_connector.main.ConnectorRunner')
    def test_main_exits_with_runner_code(self, mock_runner_class):
        mock_runner_class.return_value.run.return_value = EXIT_PROVIDER_ERROR

        with self.assertRaises(SystemExit) as ctx:
            main(['--config', 'custom.yaml', 'test'])

        self.assertEqual(ctx.exception.code, EXIT_PROVIDER_ERROR)
        mock_runner_class.assert_called_once_with(config_path='custom.yaml')

    def test_filter_value_required_with_attribute(self):
        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as ctx:
                main(['search', '--filter-attr', 'mail'])
        self.assertEqual(ctx.exception.code, 2)

    def test_limit_must_be_positive(self):
        for limit in ('0', '-3', 'many'):
            with patch('sys.stderr', new_callable=io.StringIO):
                with self.assertRaises(SystemExit) as ctx:
                    main(['search', '--limit', limit])
            self.assertEqual(ctx.exception.code, 2, limit)

    def test_command_required(self):
        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                main([])


def test_main_without_config_option(mocker):
    """Without --config the runner falls back to CONFIG_PATH/config.yaml."""
    runner_class = mocker.patch('graph_connector.main.ConnectorRunner')
    runner_class.return_value.run.return_value = EXIT_OK

    with pytest.raises(SystemExit) as excinfo:
        main(['schema'])

    assert excinfo.value.code == EXIT_OK
    runner_class.assert_called_once_with(config_path=None)
    assert runner_class.return_value.run.call_args[0][0].command == 'schema'


if __name__ == '__main__':
    unittest.main()
