"""Exceptions raised by the batch upload services."""


class BatchTaskError(Exception):
    """Base class for batch task failures."""


class SubtaskNotFoundError(BatchTaskError):
    def __init__(self, subtask_uuid: str):
        super().__init__(f"Subtask {subtask_uuid} not found")
        self.subtask_uuid = subtask_uuid


class MainTaskNotFoundError(BatchTaskError):
    def __init__(self, task_uuid: str):
        super().__init__(f"Main task {task_uuid} not found")
        self.task_uuid = task_uuid


class EnrichmentError(Exception):
    """The AI enrichment call failed or returned something unusable."""
