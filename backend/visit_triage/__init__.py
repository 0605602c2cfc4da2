"""
Visit Triage - Backend Application Package

This package contains the visit analysis backend:
- API routes for chat, analysis, persistence and alerts
- Pipeline orchestration (retrieval, generation, extraction, triage)
- Service wrappers for generative, embedding and translation providers
- Session, alert and chunk stores
"""

__version__ = "0.1.0"
