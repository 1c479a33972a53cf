"""
Adaptive Scraper - Self-Learning Entity Extraction

This module extracts entity profiles (name, description, image, link) from
pages whose markup changes over time, learning per site which extraction
strategies keep working.
"""

from .adaptive_extractor import AdaptiveExtractor
from .bot_detection import BotDetectionMonitor
from .element_scorer import ElementScorer
from .honeypots import HoneypotDetector
from .items import EntityItem
from .learning_store import LearningStore
from .maintenance import MaintenanceScheduler
from .page import HtmlPage
from .persistence import MemoryStore, SqliteStore
from .pipelines import EntityPipeline
from .retry import BackoffTracker, RetryPolicy
from .selector_discovery import SelectorDiscovery

__all__ = [
    "AdaptiveExtractor",
    "BackoffTracker",
    "BotDetectionMonitor",
    "ElementScorer",
    "EntityItem",
    "EntityPipeline",
    "HoneypotDetector",
    "HtmlPage",
    "LearningStore",
    "MaintenanceScheduler",
    "MemoryStore",
    "RetryPolicy",
    "SelectorDiscovery",
    "SqliteStore",
]
