from rag_ingestion.vectorstore.base import QueryResult, SearchDocument, SearchIndexBase
from rag_ingestion.vectorstore.factory import get_search_index

__all__ = ["SearchIndexBase", "SearchDocument", "QueryResult", "get_search_index"]
