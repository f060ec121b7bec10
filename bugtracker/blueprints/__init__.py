"""
Core Bug Tracker
Blueprint registry.
"""
