# Models module
from viralshort.models.progress_event import ProgressEventLog

__all__ = ["ProgressEventLog"]
