"""
Bundleflow - Core Module

Configuration, logging, error taxonomy and database connection helpers.
"""
