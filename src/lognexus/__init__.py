"""
LogNexus - Structured log event processing core

Correlates records across requests, evaluates alert rules over sliding
windows, mirrors records into a tamper-evident audit chain and delivers
them in optimized batches.
"""

__version__ = "0.1.0"
