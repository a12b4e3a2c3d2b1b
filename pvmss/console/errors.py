# -*- coding: utf-8 -*-
"""
Console broker errors.

Every failure of a console attempt maps to one of these. The message is what
the user sees, so it never carries upstream bodies or secrets; details go to
the server log instead.
"""


class ConsoleError(Exception):
    status = 500
    code = 'CONSOLE_ERROR'
    default_message = 'Console request failed'
    retryable = False

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {'success': False, 'error': self.message, 'code': self.code}


class BadRequest(ConsoleError):
    status = 400
    code = 'BAD_REQUEST'
    default_message = 'Invalid console request'


class Unauthorized(ConsoleError):
    status = 401
    code = 'AUTH_REQUIRED'
    default_message = 'Not logged in'


class AuthenticationFailed(ConsoleError):
    status = 401
    code = 'PROXMOX_AUTH_FAILED'
    default_message = 'Authentication failed. Please log in again.'


class AccessDenied(ConsoleError):
    status = 403
    code = 'CONSOLE_ACCESS_DENIED'
    default_message = ('Console access denied: the VM.Console permission is missing. '
                       'Please contact your administrator.')


class SessionExpired(ConsoleError):
    status = 401
    code = 'CONSOLE_SESSION_EXPIRED'
    default_message = 'Console session expired. Please request a new console ticket.'


class ServiceUnavailable(ConsoleError):
    status = 503
    code = 'PROXMOX_UNAVAILABLE'
    default_message = 'Proxmox is not reachable right now. Please try again.'
    retryable = True


class UpstreamError(ConsoleError):
    status = 502
    code = 'PROXMOX_ERROR'
    default_message = 'Proxmox could not open the console'


class InvalidUpstreamResponse(ConsoleError):
    status = 500
    code = 'INVALID_UPSTREAM_RESPONSE'
    default_message = 'Proxmox returned an unexpected response'
