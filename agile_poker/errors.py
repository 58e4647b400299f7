"""Erreurs métier, chacune portant le code HTTP correspondant."""


class PokerError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PokerError):
    status_code = 400


class AuthenticationRequired(PokerError):
    status_code = 401

    def __init__(self, message: str = "Please sign in first"):
        super().__init__(message)


class Forbidden(PokerError):
    status_code = 403


class NotFound(PokerError):
    status_code = 404


class Conflict(PokerError):
    status_code = 409
