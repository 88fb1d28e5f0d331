"""
API module for Caseflow.

Provides REST API routes for:
- Upload, download and enterprise mobile sync
- Device sync status and fleet statistics
"""
