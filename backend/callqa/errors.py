"""
Service-layer exceptions. Routers map these to HTTP status codes.
"""


class CallQAError(Exception):
    """Base class for callqa service errors."""


class AIServiceError(CallQAError):
    """The AI API failed or returned output we cannot use."""


class NoApiKeysError(AIServiceError):
    """No Gemini API key is configured."""

    def __init__(self):
        super().__init__("All API keys failed: no API keys configured")


class DuplicateResultError(CallQAError):
    """An analysis session already holds a result."""

    def __init__(self, session_id: int):
        super().__init__(f"Analysis result already exists for session {session_id}")
        self.session_id = session_id


class InvalidLanguageError(CallQAError, ValueError):
    """Unsupported source language code."""

    def __init__(self, language: str):
        super().__init__(f"Unsupported language: {language}")
        self.language = language
