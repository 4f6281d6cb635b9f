"""
Report Generation

Text, JSON and CSV views of execution reports.
"""

from npusim.reporting.report_generator import ReportGenerator

__all__ = ['ReportGenerator']
