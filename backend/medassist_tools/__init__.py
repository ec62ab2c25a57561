from .inference import InferenceClient, InferenceError
from .media_extractor import (
    MediaExtractionError,
    MediaExtractor,
    UnreadableDocumentError,
    UnsupportedFileTypeError,
)
from .upload_processor import ANALYSIS_FAILED_MESSAGE, UploadAnalysis, UploadProcessor

__all__ = [
    "ANALYSIS_FAILED_MESSAGE",
    "InferenceClient",
    "InferenceError",
    "MediaExtractionError",
    "MediaExtractor",
    "UnreadableDocumentError",
    "UnsupportedFileTypeError",
    "UploadAnalysis",
    "UploadProcessor",
]
