"""Content Experimentation Engine.

A/B test lifecycle management for marketing content: experiments, variants,
metric sample ingestion, aggregation and winner/recommendation reporting.
"""

__version__ = "0.1.0"
