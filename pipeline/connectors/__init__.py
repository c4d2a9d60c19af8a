"""
Connectors: per-integration clients that return one page of records at a time.
"""

from pipeline.connectors.base import Connector, ConnectorFactory, Page

__all__ = ["Connector", "ConnectorFactory", "Page"]
