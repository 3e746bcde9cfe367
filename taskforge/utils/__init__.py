"""
Utility Functions
=================
Schema validation and run issue reporting.
"""
