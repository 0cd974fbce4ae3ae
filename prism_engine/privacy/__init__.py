"""
Privacy module for the browser engine.
This module compiles and applies extension content blocking rules.
"""

from prism_engine.privacy.content_blocker import CompiledRuleSet, ContentBlockingManager
from prism_engine.privacy.rule_converter import convert_rules

__all__ = [
    'CompiledRuleSet',
    'ContentBlockingManager',
    'convert_rules',
]
