from .deposit_replay import DepositEventReplayWorker, ReplayLimitExceededError

__all__ = ["DepositEventReplayWorker", "ReplayLimitExceededError"]
