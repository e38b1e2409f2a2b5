"""Analyzers run by a training pass."""

from homepulse.analysis.anomaly_detector import AnomalyDetector
from homepulse.analysis.behavior_analyzer import BehaviorAnalyzer
from homepulse.analysis.cost_analyzer import CostAnalyzer
from homepulse.analysis.pattern_analyzer import PatternAnalyzer

__all__ = ["AnomalyDetector", "BehaviorAnalyzer", "CostAnalyzer", "PatternAnalyzer"]
