"""
REST API Package for the Lifecycle Engine.
"""
