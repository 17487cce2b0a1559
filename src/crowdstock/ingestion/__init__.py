"""Ingestion helpers.

Every inbound submission is normalized into a validated
:class:`crowdstock.models.Report` before it reaches the engine.
"""
