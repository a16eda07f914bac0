"""
Renewal Guard.

Recurrence date engine and calculation-version migration tooling for
recurring billing records.
"""

__version__ = "0.1.0"
