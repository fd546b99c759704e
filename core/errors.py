# core/errors.py

from typing import Optional


class PlaybackError(Exception):
    """Base class for failures reported back to whoever issued a music command."""
    default_message = "❌ Something went wrong with playback."

    def __init__(self, user_message: Optional[str] = None):
        self.user_message = user_message or self.default_message
        super().__init__(self.user_message)


class NotInVoiceChannel(PlaybackError):
    default_message = "You need to be in a voice channel to play music!"


class VoiceConnectionFailed(PlaybackError):
    default_message = "❌ I couldn't connect to your voice channel. Check my permissions and try again."


class NoResolutionResult(PlaybackError):
    default_message = "❌ No results found."

    def __init__(self, query: str):
        self.query = query
        super().__init__(f"❌ Could not find results for `{query[:100]}`. Try being more specific or check the URL.")


class InvalidLoopMode(PlaybackError):
    def __init__(self, value):
        self.value = value
        super().__init__(f"❌ `{value}` is not a loop mode. Use `none`, `one` or `all`.")


class InvalidVolume(PlaybackError):
    def __init__(self, value, minimum: int, maximum: int):
        self.value = value
        super().__init__(f"❌ Volume must be a whole number between {minimum} and {maximum}.")


class InvalidQueuePosition(PlaybackError):
    def __init__(self, position: int, queue_length: int):
        self.position = position
        if queue_length:
            message = f"Invalid position. Must be between 1 and {queue_length}."
        else:
            message = "The queue is already empty."
        super().__init__(message)


class NoActiveState(PlaybackError):
    default_message = "I'm not playing anything in this server right now."


class SinkStartFailure(PlaybackError):
    """Raised by an AudioSink when a track could not be started."""
    default_message = "❌ Playback failed to start."
