from .adaptive import AdaptiveBatcher, BatchPerformanceMetrics, estimate_record_size

__all__ = ["AdaptiveBatcher", "BatchPerformanceMetrics", "estimate_record_size"]
