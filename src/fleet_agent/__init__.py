"""
Fleet Agent

Worker agent that registers with a backend controller, pulls jobs and runs
them as external processes while streaming their logs.
"""

__version__ = "1.0.0"
