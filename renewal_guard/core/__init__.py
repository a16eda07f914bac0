"""
Core modules for Renewal Guard.

This package contains the recurrence date engine, the schedule-change
reconciler, the calculation-version migration manager and the reminder
window helpers.
"""
