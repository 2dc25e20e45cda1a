"""Provisioning engine for declared multi-provider resources.

Builds a dependency graph from a resource document, diffs it against
persisted state to produce a plan, and applies the plan through provider
capabilities in dependency order.
"""
