from .guard import DeduplicationGuard, generate_key

__all__ = ["DeduplicationGuard", "generate_key"]
