"""
Cortex core: configuration and shared validators.
"""
