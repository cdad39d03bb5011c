import logging

LOG_FORMAT = "%(asctime)s %(name)-12s - %(levelname)6s - %(message)s"


class ControllerLogger:
    def __init__(
        self,
        name: str,
        level: int = logging.INFO,
        log_file: str | None = None,
        force: bool = False,
    ):
        sh = logging.StreamHandler()
        sh.setLevel(level)
        handlers: list[logging.Handler] = [sh]
        if log_file:
            fh = logging.FileHandler(log_file)
            fh.setLevel(level)
            handlers.append(fh)
        logging.basicConfig(
            level=level,
            format=LOG_FORMAT,
            handlers=handlers,
            force=force)
        self.logger = logging.getLogger(name)
