"""Radial low-voltage network analysis module for LVFlow.

Provides phasor helpers, topology resolution, the backward/forward sweep
phase flow solver, virtual busbar aggregation and voltage compliance.
"""
