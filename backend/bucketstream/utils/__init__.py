"""
Logging and metrics helpers.
"""
