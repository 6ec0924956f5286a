"""
Infrastructure Layer

Adapters for the backend controller, external processes, configuration and logging.
"""
