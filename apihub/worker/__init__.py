from apihub.worker.executor import BuildExecutor

__all__ = ["BuildExecutor"]
