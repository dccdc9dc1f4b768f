from pdfsearch.search.cache import SearchCache
from pdfsearch.search.index import IndexSearchRequest, IndexSearchResult, MeilisearchIndex, SearchIndexBase

__all__ = ["SearchCache", "SearchIndexBase", "MeilisearchIndex", "IndexSearchRequest", "IndexSearchResult"]
