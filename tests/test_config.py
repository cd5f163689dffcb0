#!/usr/bin/env python3
"""
Unit tests for configuration module.

This module provides unit tests for the configuration loading, validation,
defaults and environment variable override functionality.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from graph_connector.config import ConfigLoader, ConfigurationError, load_config, validate_config


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'graph': {
                'tenant_id': 'contoso-tenant',
                'client_id': 'app-id',
                'client_secret': 'app-secret',
                'page_size': 200,
            },
            'logging': {
                'level': 'DEBUG',
                'log_dir': 'logs',
            },
            'error_handling': {
                'max_retries': 5,
            }
        }
        self.temp_files = []

    def tearDown(self):
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def create_test_config(self, config_data: Any) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
            self.temp_files.append(f.name)
            return f.name

    def test_valid_config(self):
        """Test loading a valid configuration applies defaults."""
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertEqual(config['graph']['page_size'], 200)
        self.assertEqual(config['graph']['base_url'], 'https://graph.microsoft.com/v1.0')
        self.assertFalse(config['graph']['force_password_change'])
        self.assertEqual(config['logging']['level'], 'DEBUG')
        self.assertEqual(config['logging']['retention_days'], 7)
        self.assertEqual(config['error_handling']['max_retries'], 5)
        self.assertEqual(config['error_handling']['retry_wait_seconds'], 2)

    def test_load_config_function(self):
        config = load_config(self.create_test_config(self.valid_config))
        self.assertEqual(config['graph']['tenant_id'], 'contoso-tenant')

    def test_missing_required_fields(self):
        """Every missing credential is reported in one error."""
        path = self.create_test_config({'graph': {'tenant_id': 'contoso-tenant'}})

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(path).load()

        message = str(ctx.exception)
        self.assertIn('client_id', message)
        self.assertIn('client_secret', message)
        self.assertNotIn('tenant_id', message)

    def test_missing_graph_section(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config({'logging': {'level': 'INFO'}})).load()
        self.assertIn('graph', str(ctx.exception))

    @patch.dict(os.environ, {
        'GRAPH_TENANT_ID': 'env-tenant',
        'GRAPH_CLIENT_SECRET': 'env-secret',
    })
    def test_env_var_overrides(self):
        """Credentials from the environment override and complete the file."""
        path = self.create_test_config({'graph': {'client_id': 'app-id', 'client_secret': 'file-secret'}})

        config = ConfigLoader(path).load()

        self.assertEqual(config['graph']['tenant_id'], 'env-tenant')
        self.assertEqual(config['graph']['client_secret'], 'env-secret')
        self.assertEqual(config['graph']['client_id'], 'app-id')

    @patch.dict(os.environ, {'CONFIG_PATH': '/nonexistent/connector.yaml'})
    def test_config_path_from_environment(self):
        loader = ConfigLoader()
        self.assertEqual(loader.config_path, '/nonexistent/connector.yaml')
        with self.assertRaises(ConfigurationError):
            loader.load()

    def test_file_not_found(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(ctx.exception))

    def test_invalid_yaml(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("graph: [unclosed\n")
            self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(f.name).load()
        self.assertIn('Invalid YAML', str(ctx.exception))

    def test_root_must_be_mapping(self):
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.create_test_config(['graph'])).load()


class TestValidateConfig(unittest.TestCase):

    def graph(self, **overrides) -> Dict[str, Any]:
        graph = {'tenant_id': 't', 'client_id': 'c', 'client_secret': 's'}
        graph.update(overrides)
        return {'graph': graph}

    def test_none(self):
        with self.assertRaises(ConfigurationError):
            validate_config(None)

    def test_invalid_values_are_collected(self):
        config = self.graph(base_url='ftp://graph', page_size=5000, truststore_type='JKS')
        config['error_handling'] = {'max_retries': -1}

        with self.assertRaises(ConfigurationError) as ctx:
            validate_config(config)

        message = str(ctx.exception)
        for fragment in ('base_url', 'page_size', 'truststore_type', 'max_retries'):
            self.assertIn(fragment, message)

    def test_empty_sections_get_defaults(self):
        config = self.graph()
        config['logging'] = None

        validate_config(config)

        self.assertEqual(config['logging']['console_level'], 'WARNING')
        self.assertEqual(config['error_handling']['retry_backoff'], 2.0)

    def test_pkcs12_truststore_type_accepted(self):
        config = validate_config(self.graph(truststore_type='pkcs12'))
        self.assertEqual(config['graph']['truststore_type'], 'pkcs12')


if __name__ == '__main__':
    unittest.main()
