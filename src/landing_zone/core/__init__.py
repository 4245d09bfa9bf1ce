"""Core components for landing zone orchestration.

This module contains the foundational components including AWS client
management, configuration handling, delegated credentials, retries and
the error taxonomy.
"""
