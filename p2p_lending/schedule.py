"""
Repayment Schedule Calculator

Maps a disbursement timestamp to the loan's repayment windows: one grace window
starting at the due date, followed by a fixed number of back-to-back penalty
windows. Everything here is a pure function of its inputs.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence


@dataclass(frozen=True)
class ScheduleConfig:
    """Durations (in days) that shape a repayment schedule"""
    term_days: int = 30
    grace_days: int = 10
    window_length_days: int = 10
    window_count: int = 4
    
    def __post_init__(self):
        if self.term_days < 0 or self.grace_days < 0:
            raise ValueError("Term and grace lengths cannot be negative")
        if self.window_length_days <= 0:
            raise ValueError("Window length must be positive")
        if self.window_count < 0:
            raise ValueError("Window count cannot be negative")


@dataclass(frozen=True)
class RepaymentWindow:
    """A closed interval [start, end] in which a minimum repayment is expected"""
    number: int
    start: datetime
    end: datetime
    is_grace: bool = False
    
    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end
    
    def has_closed(self, instant: datetime) -> bool:
        return instant >= self.end
    
    def to_dict(self) -> Dict:
        return {
            'number': self.number,
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'is_grace': self.is_grace,
        }


def due_at(disbursed_at: datetime, config: ScheduleConfig) -> datetime:
    """Due date of a loan disbursed at ``disbursed_at``"""
    return disbursed_at + timedelta(days=config.term_days)


def schedule_for(disbursed_at: datetime, config: ScheduleConfig) -> List[RepaymentWindow]:
    """
    Compute the ordered repayment windows for a disbursed loan.
    
    Window 1 is the grace window ``[due, due + grace_days]``. Windows
    2..window_count+1 follow it back to back, each ``window_length_days`` long.
    """
    due = due_at(disbursed_at, config)
    grace_end = due + timedelta(days=config.grace_days)
    windows = [RepaymentWindow(number=1, start=due, end=grace_end, is_grace=True)]
    
    length = timedelta(days=config.window_length_days)
    start = grace_end
    for number in range(2, config.window_count + 2):
        windows.append(RepaymentWindow(number=number, start=start, end=start + length))
        start = start + length
    
    return windows


def current_window(windows: Sequence[RepaymentWindow],
                   instant: datetime) -> Optional[RepaymentWindow]:
    """
    First window whose span contains ``instant``.
    
    Past the end of the schedule the final window is returned. Before the
    schedule starts (still inside the loan term) there is no current window.
    """
    if not windows:
        return None
    if instant < windows[0].start:
        return None
    for window in windows:
        if window.contains(instant):
            return window
    return windows[-1]


def closed_windows(windows: Sequence[RepaymentWindow],
                   instant: datetime) -> List[RepaymentWindow]:
    """Windows whose end time has passed at ``instant``, in order"""
    return [window for window in windows if window.has_closed(instant)]
