"""
Gavel core: configuration, errors, collaborators, sessions and storage.
"""
