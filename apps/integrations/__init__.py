"""
Clients for the external building blocks (Authman, Core, Notifications).
"""

from .exceptions import IntegrationError, IntegrationNotConfiguredError
from .authman import AuthmanClient, AuthmanStemGroup, AuthmanSubject
from .core import CoreAccount, CoreClient
from .notifications import NotificationsClient

__all__ = [
    'IntegrationError',
    'IntegrationNotConfiguredError',
    'AuthmanClient',
    'AuthmanStemGroup',
    'AuthmanSubject',
    'CoreAccount',
    'CoreClient',
    'NotificationsClient',
]
