from rag_ingestion.observability.tracing import traced

__all__ = ["traced"]
