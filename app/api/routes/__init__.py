from . import analyses, progress, runs, worker

__all__ = ["analyses", "progress", "runs", "worker"]
