"""
PCB Tracer Test Suite

This package contains tests for the PCB tracer geometric core (scan alignment,
contact rows, via detection and confirmation, DIP pin grids).

Structure:
- unit/: Unit tests for individual components
- integration/: End-to-end runs over synthetic board scans
"""
