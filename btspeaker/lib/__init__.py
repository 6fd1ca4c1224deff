"""
Shared library: config, data model, event bus, state store and reconciler.
"""
