"""
Canonical event model and the pure transformations between source systems.
"""
