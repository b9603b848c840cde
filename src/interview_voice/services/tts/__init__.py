"""
Speech Synthesis Package.

This package contains the building blocks for turn-based speech delivery:

- sentence_splitter: Splits a complete response into speakable chunks
- speech_cache: Content-addressed cache of synthesized audio

Architecture Overview:

    ┌──────────────┐     ┌──────────────────┐     ┌──────────────┐
    │ Response text│────▶│ SentenceSplitter │────▶│   Gateway    │──▶ audio
    └──────────────┘     └──────────────────┘     │ stream_speech│
                                                  └──────────────┘

    ┌──────────────┐     ┌──────────────────┐     ┌──────────────┐
    │ Replay text  │────▶│   SpeechCache    │────▶│ Object store │
    └──────────────┘     │ (fingerprint)    │     └──────────────┘
                         └──────────────────┘
                                  │ miss
                                  ▼
                         ┌──────────────────┐
                         │ Gateway one-shot │
                         └──────────────────┘

Chunks are synthesized strictly one at a time so audio reaches the listener
in sentence order, and the first sentence starts playing before the rest of
the response has been synthesized.
"""

from .sentence_splitter import SentenceSplitter, split_sentences
from .speech_cache import SpeechCache

__all__ = ["SentenceSplitter", "SpeechCache", "split_sentences"]
