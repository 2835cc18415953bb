"""Error taxonomy for the wagering core.

Every error a caller can see derives from ``GameError`` and carries the HTTP
status and a short machine-readable code. The app factory renders them as
``{"error": ..., "code": ...}``.
"""


class GameError(Exception):
    status_code = 400
    code = 'game_error'


class InsufficientFunds(GameError):
    status_code = 402
    code = 'insufficient_funds'


class InvalidStake(GameError):
    status_code = 400
    code = 'invalid_stake'


class MatchNotFound(GameError):
    status_code = 404
    code = 'match_not_found'


class MatchFull(GameError):
    status_code = 409
    code = 'match_full'


class MatchNotActive(GameError):
    status_code = 409
    code = 'match_not_active'


class AlreadyAnswered(GameError):
    status_code = 409
    code = 'already_answered'


class AlreadyParticipant(GameError):
    status_code = 409
    code = 'already_participant'


class NotAParticipant(GameError):
    status_code = 403
    code = 'not_a_participant'


class NoPromptAvailable(GameError):
    status_code = 503
    code = 'no_prompt_available'


class FreeCreditsUnavailable(GameError):
    status_code = 429
    code = 'free_credits_unavailable'

    def __init__(self, message, next_claim_at=None):
        super().__init__(message)
        self.next_claim_at = next_claim_at


class StorageFailure(GameError):
    """Transaction aborted or store unreachable. Safe to retry."""
    status_code = 503
    code = 'storage_failure'


class SettlementConflict(Exception):
    """Another caller holds the settlement claim; its result is authoritative."""
