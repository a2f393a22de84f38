"""
Test suite for pgmirror.
"""
