"""
Extensions module for the browser engine.
This module installs browser extensions and runs their scripts.
"""

from prism_engine.extensions.background import BackgroundRuntime
from prism_engine.extensions.injector import ContentScriptInjector, InjectionPayload
from prism_engine.extensions.manager import ExtensionManager
from prism_engine.extensions.manifest import ExtensionManifest, parse_manifest
from prism_engine.extensions.match_patterns import matches_url
from prism_engine.extensions.models import ContentScript, Extension, RunAt
from prism_engine.extensions.popup import ExtensionPopupHost, PopupRequest

__all__ = [
    'BackgroundRuntime',
    'ContentScript',
    'ContentScriptInjector',
    'Extension',
    'ExtensionManager',
    'ExtensionManifest',
    'ExtensionPopupHost',
    'InjectionPayload',
    'PopupRequest',
    'RunAt',
    'matches_url',
    'parse_manifest',
]
