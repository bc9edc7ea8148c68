"""Run reports."""

from reporting.report import RunReport

__all__ = ['RunReport']
