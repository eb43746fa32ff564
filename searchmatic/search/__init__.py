"""PubMed search module."""

from .pubmed_client import PubMedClient, build_search_query, parse_articles

__all__ = ["PubMedClient", "build_search_query", "parse_articles"]
