"""
In `engine.py` config["heartbeat"]
has several logic steps. Isolate that out here.
"""
#pylint:disable=line-too-long

from dataclasses import dataclass
from typing import List


@dataclass(slots=True)
class HeartbeatConfig:
    """
    The __post_init__ enforces the constraints beyond types:
    positive periods, counts ≥ 1, and a probe timeout shorter than the interval
    (a ping must be answerable before the next tick looks at it).
    The `merge_in` of dictionaries from json configurations
    does not raise; it returns a list of strings for the logger to output as errors.
    """
    enabled: bool = True
    interval_seconds: float = 5.0
    timeout_seconds: float = 2.0
    max_missed: int = 3
    max_failures: int = 3
    initial_delay_seconds: float = 1.0

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError("The provided interval_seconds must be a number > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("The provided timeout_seconds must be a number > 0")
        if self.timeout_seconds >= self.interval_seconds:
            raise ValueError("The provided timeout_seconds must be smaller than interval_seconds")
        if self.max_missed <= 0:
            raise ValueError("The provided max_missed must be an integer ≥ 1")
        if self.max_failures <= 0:
            raise ValueError("The provided max_failures must be an integer ≥ 1")
        if self.initial_delay_seconds < 0:
            raise ValueError("The provided initial_delay_seconds must be a number ≥ 0")

    #pylint:disable=too-many-branches
    def merge_in(self, **kwargs) -> List[str]:
        """
        Rather than give ValueError with only one thing that is wrong,
        if there are multiple problems with the config, then the error should show them all.
        """
        all_problems = []
        if "enabled" in kwargs:
            if not isinstance((z := kwargs["enabled"]), bool):
                all_problems.append(f"The provided enabled was not a bool. It was {type(z)}")
            else:
                self.enabled = z
        interval = self.interval_seconds
        timeout = self.timeout_seconds
        if "interval_seconds" in kwargs:
            if not isinstance((z := kwargs["interval_seconds"]), float | int) or isinstance(z, bool):
                all_problems.append(f"The provided interval_seconds was not an integer or a float. It was {type(z)}")
            elif z <= 0:
                all_problems.append(f"The provided interval_seconds must be > 0. It was {z}")
            else:
                interval = z
        if "timeout_seconds" in kwargs:
            if not isinstance((z := kwargs["timeout_seconds"]), float | int) or isinstance(z, bool):
                all_problems.append(f"The provided timeout_seconds was not an integer or a float. It was {type(z)}")
            elif z <= 0:
                all_problems.append(f"The provided timeout_seconds must be > 0. It was {z}")
            else:
                timeout = z
        if timeout >= interval:
            all_problems.append(f"The provided timeout_seconds ({timeout}) must be smaller than interval_seconds ({interval})")
        else:
            self.interval_seconds = interval
            self.timeout_seconds = timeout
        if "max_missed" in kwargs:
            if not isinstance((z := kwargs["max_missed"]), int) or isinstance(z, bool):
                all_problems.append(f"The provided max_missed was not an integer. It was {type(z)}")
            elif z <= 0:
                all_problems.append("The provided max_missed must be an integer ≥ 1")
            else:
                self.max_missed = z
        if "max_failures" in kwargs:
            if not isinstance((z := kwargs["max_failures"]), int) or isinstance(z, bool):
                all_problems.append(f"The provided max_failures was not an integer. It was {type(z)}")
            elif z <= 0:
                all_problems.append("The provided max_failures must be an integer ≥ 1")
            else:
                self.max_failures = z
        if "initial_delay_seconds" in kwargs:
            if not isinstance((z := kwargs["initial_delay_seconds"]), float | int) or isinstance(z, bool):
                all_problems.append(f"The provided initial_delay_seconds was not an integer or a float. It was {type(z)}")
            elif z < 0:
                all_problems.append(f"The provided initial_delay_seconds was negative. It was {z}")
            else:
                self.initial_delay_seconds = z
        return all_problems
