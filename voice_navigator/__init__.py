"""
Voice Navigator.

Architecture:
  Microphone -> Speech Recognition -> Listening state machine -> Command router
  Speaker <- Text-to-Speech <- Reading queue <- Page snapshot (Playwright)
"""

__version__ = "0.3.0"
