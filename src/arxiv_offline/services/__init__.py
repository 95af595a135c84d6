"""Network collaborators: arXiv feed source and streamed document fetch."""

from arxiv_offline.services.arxiv_feed_service import (
    build_arxiv_query,
    fetch_feed_page,
    parse_feed,
)
from arxiv_offline.services.document_service import DocumentStream, open_document_stream
from arxiv_offline.services.interfaces import (
    AppServices,
    DefaultDocumentSource,
    DefaultFeedSource,
    DocumentSource,
    FeedSource,
    build_default_app_services,
)

__all__ = [
    "AppServices",
    "DefaultDocumentSource",
    "DefaultFeedSource",
    "DocumentSource",
    "DocumentStream",
    "FeedSource",
    "build_arxiv_query",
    "build_default_app_services",
    "fetch_feed_page",
    "open_document_stream",
    "parse_feed",
]
