"""
Engine module.
The interface the extension runtime drives, and its dukpy implementation.
"""

from prism_engine.engine.base import ScriptContext, WebEngine
from prism_engine.engine.rule_store import ContentRuleList, RuleStore

__all__ = [
    'ContentRuleList',
    'RuleStore',
    'ScriptContext',
    'WebEngine',
]
