"""
Gatekeeper Core Models

Rule-based bot scoring and experiment analysis.
"""

from core.models.bot_score import BotScoreModel
from core.models.significance import ExperimentAnalyzer

__all__ = [
    "BotScoreModel",
    "ExperimentAnalyzer",
]
