#!/usr/bin/env python3
"""
Unit tests for schema building and the build-once schema cache.
"""

import os
import sys
import threading
import time
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from graph_connector.schema import (
    AttributeInfo,
    ObjectClassInfoBuilder,
    Schema,
    SchemaBuilder,
    SchemaCache,
)


def build_sample_schema() -> Schema:
    schema_builder = SchemaBuilder()
    account = ObjectClassInfoBuilder('__ACCOUNT__')
    account.add_attribute_info(AttributeInfo('__NAME__', required=True))
    account.add_attribute_info(AttributeInfo('otherMails', multi_valued=True))
    schema_builder.define_object_class(account.build())
    return schema_builder.build()


class TestSchemaBuilder(unittest.TestCase):

    def test_lookup(self):
        schema = build_sample_schema()
        account = schema.find_object_class_info('__ACCOUNT__')

        self.assertTrue(account.find_attribute_info('otherMails').multi_valued)
        self.assertIsNone(account.find_attribute_info('missing'))
        self.assertIsNone(schema.find_object_class_info('__GROUP__'))

    def test_duplicate_attribute_rejected(self):
        builder = ObjectClassInfoBuilder('__ACCOUNT__')
        builder.add_attribute_info(AttributeInfo('mail'))
        with self.assertRaises(ValueError):
            builder.add_attribute_info(AttributeInfo('mail'))

    def test_duplicate_object_class_rejected(self):
        schema_builder = SchemaBuilder()
        schema_builder.define_object_class(ObjectClassInfoBuilder('__GROUP__').build())
        with self.assertRaises(ValueError):
            schema_builder.define_object_class(ObjectClassInfoBuilder('__GROUP__').build())

    def test_built_catalogs_are_read_only(self):
        schema = build_sample_schema()
        account = schema.find_object_class_info('__ACCOUNT__')

        with self.assertRaises(TypeError):
            account.attributes['otherMails'] = AttributeInfo('otherMails')
        with self.assertRaises(TypeError):
            schema.object_classes['__GROUP__'] = account
        self.assertTrue(account.find_attribute_info('otherMails').multi_valued)

    def test_builder_changes_after_build_do_not_leak(self):
        builder = ObjectClassInfoBuilder('__GROUP__')
        info = builder.build()
        builder.add_attribute_info(AttributeInfo('members', multi_valued=True))

        self.assertIsNone(info.find_attribute_info('members'))

    def test_to_dict(self):
        data = build_sample_schema().to_dict()
        names = [attr['name'] for attr in data['__ACCOUNT__']]

        self.assertEqual(names, ['__NAME__', 'otherMails'])
        self.assertEqual(data['__ACCOUNT__'][0]['type'], 'str')
        self.assertTrue(data['__ACCOUNT__'][1]['multiValued'])


class TestSchemaCache(unittest.TestCase):

    def setUp(self):
        self.build_count = 0
        self.count_lock = threading.Lock()

    def counting_build(self) -> Schema:
        with self.count_lock:
            self.build_count += 1
        time.sleep(0.05)
        return build_sample_schema()

    def test_concurrent_first_use_builds_once(self):
        """Many threads asking for the schema at once trigger exactly one build."""
        cache = SchemaCache(self.counting_build)
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            schema = cache.get_or_build()
            with results_lock:
                results.append(schema)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        self.assertEqual(self.build_count, 1)
        self.assertEqual(len(results), 8)
        for schema in results:
            self.assertIs(schema, results[0])

    def test_later_calls_reuse_schema(self):
        cache = SchemaCache(self.counting_build)
        self.assertFalse(cache.is_built)

        first = cache.get_or_build()
        self.assertIs(cache.get_or_build(), first)
        self.assertTrue(cache.is_built)
        self.assertEqual(self.build_count, 1)

    def test_cached_schema_survives_caller_edits(self):
        cache = SchemaCache(self.counting_build)
        attributes = cache.get_or_build().object_classes['__ACCOUNT__'].attributes

        with self.assertRaises(TypeError):
            attributes['otherMails'] = AttributeInfo('otherMails')

        cached = cache.get_or_build().find_object_class_info('__ACCOUNT__')
        self.assertTrue(cached.find_attribute_info('otherMails').multi_valued)

    def test_failed_build_is_retried_on_next_call(self):
        outcomes = [RuntimeError('Graph unavailable')]

        def flaky_build():
            if outcomes:
                raise outcomes.pop()
            return build_sample_schema()

        cache = SchemaCache(flaky_build)
        with self.assertRaises(RuntimeError):
            cache.get_or_build()
        self.assertFalse(cache.is_built)

        self.assertIsNotNone(cache.get_or_build().find_object_class_info('__ACCOUNT__'))

    def test_invalidate(self):
        cache = SchemaCache(self.counting_build)
        cache.get_or_build()
        cache.invalidate()
        cache.get_or_build()
        self.assertEqual(self.build_count, 2)


if __name__ == '__main__':
    unittest.main()
