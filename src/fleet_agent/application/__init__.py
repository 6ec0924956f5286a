"""
Agent Application Layer

Task registry, job lifecycle, log fan-out and the control loops.
"""
