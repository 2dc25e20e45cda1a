"""Tests for engine.graph module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.errors import ValidationError
from engine.graph import ResourceGraph, build_graph
from resources import ResourceSpec


def _spec(address, index=0, refs=(), depends_on=()):
    """Helper to build a spec whose attributes reference the given addresses."""
    provider, type_, name = address.split('.')
    attributes = {f'ref{i}': f'${{{ref}.id}}' for i, ref in enumerate(refs)}
    return ResourceSpec(provider=provider, type=type_, name=name, attributes=attributes,
                        depends_on=tuple(depends_on), index=index)


def _addresses(nodes):
    return [n.address for n in nodes]


class TestGraphBuild:
    """Tests for graph construction and validation."""

    def test_empty(self):
        graph = build_graph([])
        assert len(graph) == 0
        assert graph.topological_order() == []

    def test_edges(self):
        graph = build_graph([
            _spec('aws.vm.a', 0),
            _spec('aws.storage.b', 1, refs=['aws.vm.a']),
        ])
        b = graph.get_node('aws.storage.b')
        a = graph.get_node('aws.vm.a')
        assert b.dependencies == [a]
        assert a.dependents == [b]
        assert a.is_root
        assert b.is_leaf
        assert _addresses(graph.roots) == ['aws.vm.a']

    def test_depends_on_edge(self):
        graph = build_graph([
            _spec('aws.vm.a', 0),
            _spec('aws.vm.b', 1, depends_on=['aws.vm.a']),
        ])
        assert _addresses(graph.get_node('aws.vm.b').dependencies) == ['aws.vm.a']

    def test_duplicate(self):
        with pytest.raises(ValidationError, match='Duplicate'):
            ResourceGraph([_spec('aws.vm.a', 0), _spec('aws.vm.a', 1)])

    def test_missing_references_reported_together(self):
        with pytest.raises(ValidationError) as exc_info:
            build_graph([
                _spec('aws.vm.a', 0, refs=['aws.vm.ghost']),
                _spec('aws.vm.b', 1, depends_on=['aws.vm.phantom']),
            ])
        err = exc_info.value
        assert 'aws.vm.ghost' in err.message
        assert 'aws.vm.phantom' in err.message
        assert err.addresses == ['aws.vm.a', 'aws.vm.b']

    def test_get_node_unknown(self):
        graph = build_graph([_spec('aws.vm.a')])
        with pytest.raises(KeyError):
            graph.get_node('aws.vm.nope')


class TestCycleDetection:
    """Tests for deterministic cycle errors."""

    def test_two_node_cycle(self):
        with pytest.raises(ValidationError) as exc_info:
            build_graph([
                _spec('aws.vm.a', 0, refs=['aws.vm.b']),
                _spec('aws.vm.b', 1, refs=['aws.vm.a']),
            ])
        err = exc_info.value
        assert err.address == 'aws.vm.a'
        assert 'aws.vm.a -> aws.vm.b -> aws.vm.a' in err.message
        assert set(err.addresses) == {'aws.vm.a', 'aws.vm.b'}

    def test_self_reference(self):
        with pytest.raises(ValidationError, match="involving 'aws.vm.a'"):
            build_graph([_spec('aws.vm.a', 0, refs=['aws.vm.a'])])

    def test_cycle_behind_acyclic_prefix(self):
        with pytest.raises(ValidationError) as exc_info:
            build_graph([
                _spec('aws.vm.root', 0),
                _spec('aws.vm.x', 1, refs=['aws.vm.root', 'aws.vm.y']),
                _spec('aws.vm.y', 2, refs=['aws.vm.z']),
                _spec('aws.vm.z', 3, refs=['aws.vm.x']),
            ])
        err = exc_info.value
        assert err.address == 'aws.vm.x'
        assert 'aws.vm.root' not in err.addresses

    def test_same_input_same_error(self):
        specs = [
            _spec('aws.vm.c', 0, refs=['aws.vm.d']),
            _spec('aws.vm.d', 1, refs=['aws.vm.c']),
        ]
        messages = set()
        for _ in range(5):
            with pytest.raises(ValidationError) as exc_info:
                build_graph(specs)
            messages.add(exc_info.value.message)
        assert len(messages) == 1


class TestGraphOrdering:
    """Tests for topological and reverse ordering."""

    def test_dependencies_first(self):
        graph = build_graph([
            _spec('aws.storage.b', 0, refs=['aws.vm.a']),
            _spec('aws.vm.a', 1),
        ])
        assert _addresses(graph.topological_order()) == ['aws.vm.a', 'aws.storage.b']

    def test_ties_keep_declaration_order(self):
        graph = build_graph([
            _spec('aws.vm.c', 0),
            _spec('aws.vm.a', 1),
            _spec('aws.vm.b', 2),
        ])
        assert _addresses(graph.topological_order()) == ['aws.vm.c', 'aws.vm.a', 'aws.vm.b']

    def test_diamond(self):
        graph = build_graph([
            _spec('aws.vm.top', 0),
            _spec('aws.vm.left', 1, refs=['aws.vm.top']),
            _spec('aws.vm.right', 2, refs=['aws.vm.top']),
            _spec('aws.vm.bottom', 3, refs=['aws.vm.left', 'aws.vm.right']),
        ])
        assert _addresses(graph.topological_order()) == [
            'aws.vm.top', 'aws.vm.left', 'aws.vm.right', 'aws.vm.bottom',
        ]
        assert _addresses(graph.reverse_order()) == [
            'aws.vm.bottom', 'aws.vm.right', 'aws.vm.left', 'aws.vm.top',
        ]

    def test_ancestors_and_descendants(self):
        graph = build_graph([
            _spec('aws.vm.a', 0),
            _spec('aws.vm.b', 1, refs=['aws.vm.a']),
            _spec('aws.vm.c', 2, refs=['aws.vm.b']),
            _spec('aws.vm.d', 3),
        ])
        assert graph.ancestors('aws.vm.c') == ['aws.vm.a', 'aws.vm.b']
        assert graph.descendants('aws.vm.a') == ['aws.vm.b', 'aws.vm.c']
        assert graph.descendants('aws.vm.d') == []


class TestGraphExtract:
    """Tests for targeted subgraphs."""

    def test_extract_keeps_dependencies(self):
        graph = build_graph([
            _spec('aws.vm.a', 0),
            _spec('aws.vm.b', 1, refs=['aws.vm.a']),
            _spec('aws.vm.c', 2),
        ])
        sub = graph.extract(['aws.vm.b'])
        assert sub.addresses == ['aws.vm.a', 'aws.vm.b']
        assert 'aws.vm.c' not in sub

    def test_extract_unknown_target(self):
        graph = build_graph([_spec('aws.vm.a')])
        with pytest.raises(KeyError):
            graph.extract(['aws.vm.nope'])
