"""
Common Utilities Module Initialization
"""
