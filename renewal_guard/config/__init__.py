"""
Configuration for Renewal Guard.
"""
