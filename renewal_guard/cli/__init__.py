"""
Command-line interface for Renewal Guard.
"""
