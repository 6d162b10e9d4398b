"""
Core business logic components.

This package contains the main processing components:
- Correlation context propagation
- Alert rule evaluation and action dispatch
- Audit hash chain with retention and compliance export
- Batch optimizer with record cache and memory control
- Event bus, metrics collection and health checks
"""
