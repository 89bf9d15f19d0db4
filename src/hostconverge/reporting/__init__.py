"""Run reporting."""

from hostconverge.reporting.report import RunReport

__all__ = ['RunReport']
