from dataclasses import dataclass


@dataclass(frozen=True)
class MatchPolicy:
    """Snapshot of the match settings in force when a match is created."""
    duration_sec: float
    rake_bps: int
    min_stake: int
    max_stake: int
    refund_on_no_winner: bool

    @classmethod
    def from_config(cls, config) -> 'MatchPolicy':
        return cls(
            duration_sec=float(config.get('MATCH_DURATION_SEC', 30)),
            rake_bps=int(round(float(config.get('RAKE_PERCENT', 10)) * 100)),
            min_stake=int(config.get('MIN_STAKE', 10)),
            max_stake=int(config.get('MAX_STAKE', 10000)),
            refund_on_no_winner=bool(config.get('REFUND_ON_NO_WINNER', False)),
        )

    def allows_stake(self, stake: int) -> bool:
        return self.min_stake <= stake <= self.max_stake

    def as_dict(self):
        return {
            'duration_sec': self.duration_sec,
            'rake_percent': self.rake_bps / 100.0,
            'min_stake': self.min_stake,
            'max_stake': self.max_stake,
            'refund_on_no_winner': self.refund_on_no_winner,
        }
