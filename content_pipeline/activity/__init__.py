"""Activity recording for the publishing core."""
from content_pipeline.activity.models import ActivityEvent, ActivitySink
from content_pipeline.activity.recorder import ActivityRecorder, get_recorder, init_recorder

__all__ = [
    "ActivityEvent", "ActivitySink",
    "ActivityRecorder", "init_recorder", "get_recorder",
]
