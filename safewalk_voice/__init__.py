"""SafeWalk Voice: hands-free voice companion for walking navigation."""

from .config import VoiceCompanionConfig
from .context import ConversationContext, RouteDetails, TrustedContact
from .errors import (
    PlaybackStopped,
    QueueCleared,
    RecognitionFatalError,
    RecognizerAlreadyStarted,
    SynthesisError,
    VoiceCompanionError,
)
from .orchestrator import ConversationOrchestrator, ConversationPhase, VoiceStatus
from .voice_queue import VoiceCategory

__version__ = "1.0.0"
