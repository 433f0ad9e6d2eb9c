"""
wp_vrt package initializer.
Defines the package version; the CLI lives in :mod:`wp_vrt.cli`.
"""
__version__ = "0.1.0"
