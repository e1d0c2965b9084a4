# core/rules/__init__.py
from .base import RuleBatch, RuleOptions
from .engine import BACKENDS, RuleEngine, detect_platform

__all__ = ['RuleBatch', 'RuleOptions', 'RuleEngine', 'BACKENDS', 'detect_platform']
