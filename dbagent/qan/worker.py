"""
DB Agent - QAN Worker Module

A worker turns one interval into a Result. Workers are run by an analyzer
in an executor thread, one at a time, only while MySQL is configured.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .event import GlobalClass, QueryClass
from .interval import Interval


@dataclass
class Result:
    global_class: GlobalClass
    classes: List[QueryClass] = field(default_factory=list)
    stop_offset: int = 0
    run_time: float = 0.0
    error: str = ""


class Worker(ABC):
    """Slow log or Performance Schema strategy

    setup(), run() and cleanup() block and run in an executor thread;
    stop() is called from the event loop and must only signal.
    """

    name = ""

    @abstractmethod
    def setup(self, interval: Interval) -> None:
        pass

    @abstractmethod
    def run(self) -> Optional[Result]:
        """Process the interval given to setup()

        Returns:
            Result, or None if there is nothing to report
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def cleanup(self) -> None:
        pass

    @abstractmethod
    def status(self) -> Dict[str, str]:
        pass
