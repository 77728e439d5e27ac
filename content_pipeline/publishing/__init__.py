"""Platform publishing: adaptation, error classification, publishers, dispatch."""

from content_pipeline.publishing.adaptation import (
    PLATFORM_RULES,
    AdaptedContent,
    PlatformRule,
    adapt_content,
)
from content_pipeline.publishing.classification import classify_error, classify_status
from content_pipeline.publishing.dispatcher import DispatchResult, PublishingDispatcher
from content_pipeline.publishing.publishers import (
    LinkedInPublisher,
    PublisherRegistry,
    PublishReceipt,
    SocialPublisher,
    XPublisher,
)

__all__ = [
    "PLATFORM_RULES",
    "AdaptedContent",
    "PlatformRule",
    "adapt_content",
    "classify_error",
    "classify_status",
    "DispatchResult",
    "PublishingDispatcher",
    "LinkedInPublisher",
    "PublisherRegistry",
    "PublishReceipt",
    "SocialPublisher",
    "XPublisher",
]
