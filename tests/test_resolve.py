"""Tests for stack_opr.resolve module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import UnresolvedReferenceError
from stack import Ref, Resource
from stack_opr.resolve import (
    Deferred,
    has_deferred,
    require_resolved,
    resolve_properties,
    resolve_tree,
    to_display,
)


def _source():
    return Resource.from_dict('Source', {'type': 'data-source', 'properties': {
        'apiId': {'ref': 'Api.apiId'},
        'name': 'src',
        'type': 'AMAZON_DYNAMODB',
        'dynamoDbConfig': {'tableName': {'ref': 'Table.tableName'}, 'awsRegion': 'r1'},
    }})


class TestResolveTree:
    """Tests for resolution against known outputs."""

    def test_all_known(self):
        outputs = {'Api': {'apiId': 'api-1'}, 'Table': {'tableName': 'posts'}}
        props = resolve_properties(_source(), outputs)
        assert props == {
            'apiId': 'api-1',
            'name': 'src',
            'type': 'AMAZON_DYNAMODB',
            'dynamoDbConfig': {'tableName': 'posts', 'awsRegion': 'r1'},
        }
        assert not has_deferred(props)

    def test_unknown_producer_deferred(self):
        props = resolve_properties(_source(), {'Api': {'apiId': 'api-1'}})
        assert props['dynamoDbConfig']['tableName'] == Deferred(Ref('Table', 'tableName'))
        assert has_deferred(props)

    def test_missing_attribute_deferred(self):
        assert resolve_tree(Ref('Api', 'apiId'), {'Api': {}}) == Deferred(Ref('Api', 'apiId'))

    def test_lists(self):
        value = [Ref('A', 'arn')]
        assert resolve_tree(value, {'A': {'arn': 'arn:1'}}) == ['arn:1']
        assert has_deferred(resolve_tree(value, {}))


class TestRequireResolved:
    """Tests for apply-time resolution."""

    def test_resolves_when_complete(self):
        outputs = {'Api': {'apiId': 'api-1'}, 'Table': {'tableName': 'posts'}}
        assert require_resolved(_source(), outputs)['apiId'] == 'api-1'

    def test_raises_with_logical_id(self):
        with pytest.raises(UnresolvedReferenceError) as exc:
            require_resolved(_source(), {'Api': {'apiId': 'api-1'}})
        assert exc.value.logical_id == 'Source'
        assert exc.value.target == 'Table'
        assert exc.value.attribute == 'tableName'


class TestToDisplay:
    """Tests for plan rendering of placeholders."""

    def test_deferred_rendered(self):
        shown = to_display({'a': [Deferred(Ref('Api', 'apiId'))], 'b': 1})
        assert shown == {'a': ['(known after apply: Api.apiId)'], 'b': 1}
