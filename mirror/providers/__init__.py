"""Chain event providers.

Import strategies via mirror.providers.registry.discover().
"""
