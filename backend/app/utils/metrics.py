"""Prometheus metrics for document processing and chat streaming."""

from prometheus_client import Counter, Histogram

# Document processing metrics
documents_processed_total = Counter(
    "documents_processed_total",
    "Document processing attempts by outcome",
    ["outcome"],
)

document_processing_seconds = Histogram(
    "document_processing_seconds",
    "End-to-end document processing latency in seconds",
    ["outcome"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120],
)

document_chunks_created_total = Counter(
    "document_chunks_created_total",
    "Chunk rows persisted",
)

embedding_batch_latency_ms = Histogram(
    "embedding_batch_latency_ms",
    "Embedding API request latency in milliseconds",
    buckets=[50, 100, 200, 500, 1000, 2000, 4000, 8000],
)

# Chat metrics
chat_turns_total = Counter(
    "chat_turns_total",
    "Chat turns by outcome",
    ["outcome"],
)

chat_stream_fragments_total = Counter(
    "chat_stream_fragments_total",
    "Completion fragments forwarded to clients",
)


class PrometheusPipelineMetrics:
    """Prometheus-based pipeline metrics implementation."""

    def record_processing(self, outcome: str, seconds: float, chunks_created: int = 0) -> None:
        """Record one processing attempt."""
        documents_processed_total.labels(outcome=outcome).inc()
        document_processing_seconds.labels(outcome=outcome).observe(seconds)
        if chunks_created:
            document_chunks_created_total.inc(chunks_created)

    def record_chat_turn(self, outcome: str) -> None:
        """Record a finished chat turn."""
        chat_turns_total.labels(outcome=outcome).inc()

    def inc_fragments(self, count: int = 1) -> None:
        """Count forwarded stream fragments."""
        chat_stream_fragments_total.inc(count)
