"""
Agent Interfaces

Local HTTP and WebSocket surface.
"""
