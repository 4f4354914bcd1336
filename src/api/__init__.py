"""
FastAPI service for the community-governed feed.

Provides:
- GET /xrpc/app.bsky.feed.getFeedSkeleton - Paginated ranked feed
- /governance/* - Voting
- /admin/* - Governance administration
- /transparency/* - Score explanations and audit log
- GET /health - Service health check
"""

from src.api.app import create_app

__all__ = ["create_app"]
