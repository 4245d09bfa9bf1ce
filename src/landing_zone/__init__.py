"""Landing Zone Stack Orchestrator - Main Package.

This package resolves deployment targets across a multi-account landing zone
and creates or updates one CloudFormation stack per account and region.
"""

__version__ = "1.0.0"
__author__ = "Landing Zone Automation Team"
