"""
LLM Dictation Transforms - app-aware post-processing for dictated text.

Routes transcribed text through configurable pipelines of local text
operations and LLM steps, with an optional local tool server that lets
LLM command-line tools automate a few desktop actions.
"""

__version__ = "0.2.0"
__author__ = "Brian Weaver"
__description__ = "App-aware LLM transformation pipelines for dictated text"
