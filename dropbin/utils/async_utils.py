import time


class Timer:
    def __init__(self):
        self.wall_start_time = 0.0
        self.wall_end_time = 0.0

    def start(self):
        self.wall_start_time = time.monotonic()

    def end(self):
        self.wall_end_time = time.monotonic()

    @property
    def wall_time(self) -> float:
        return self.wall_end_time - self.wall_start_time

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, *args):
        self.end()
