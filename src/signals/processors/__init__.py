"""Processors that turn extracted email signals into application updates."""
from .application_status import ApplicationStatusProcessor
from .base import BaseProcessor
from .company_feedback import CompanyFeedbackProcessor
from .interview_round import InterviewRoundProcessor
from .round_feedback import RoundFeedbackProcessor

__all__ = [
    "BaseProcessor",
    "InterviewRoundProcessor",
    "RoundFeedbackProcessor",
    "ApplicationStatusProcessor",
    "CompanyFeedbackProcessor",
]
