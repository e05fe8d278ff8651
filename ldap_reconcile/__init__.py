"""
LDAP Reconcile - Manage directory entries declaratively.

This package compares declared LDAP objects (object classes and attributes)
with the entries in a directory and creates, updates, recreates, deletes or
imports them so the directory matches the declaration.
"""

__version__ = "1.0.0"
__author__ = "LDAP Reconcile Team"
