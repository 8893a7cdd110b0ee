"""
URL Finder: HTTP retrievability verification for Filecoin storage providers.

Resolves each provider's advertised HTTP endpoints, samples its deals, probes
piece URLs and keeps per-provider discovery and bandwidth-test schedules.
"""

__version__ = "2.0.0"
