"""
Core modules for contentgen.

This package contains model resolution, prompt assembly, token and cost
estimation, the generation orchestrator and the stats cache.
"""
