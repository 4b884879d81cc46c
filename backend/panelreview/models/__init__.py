from .review import ImageReview
from .storyboard import GeneratedImage, Panel, Storyboard

__all__ = ["GeneratedImage", "ImageReview", "Panel", "Storyboard"]
