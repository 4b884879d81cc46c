from .analysis import AnalysisGateway
from .review_config import ReviewConfigStore
from .review_service import ReviewService
from .vision import create_vision_provider

__all__ = ["AnalysisGateway", "ReviewConfigStore", "ReviewService", "create_vision_provider"]
