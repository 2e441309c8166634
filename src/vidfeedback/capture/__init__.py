"""Capture side: audio pipeline, event recorder, session assembler."""
from vidfeedback.capture.assembler import SessionAssembler
from vidfeedback.capture.audio import AudioCapturePipeline, AudioInput, choose_mime_type
from vidfeedback.capture.recorder import CategoryChange, EventRecorder

__all__ = [
    "AudioCapturePipeline",
    "AudioInput",
    "CategoryChange",
    "EventRecorder",
    "SessionAssembler",
    "choose_mime_type",
]
