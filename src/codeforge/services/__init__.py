"""
Services Package
================

Request admission (registries, coordinator), pacing policy and the
generation pipeline under ``services.generation``.
"""
