from time import time

from omegaconf import DictConfig, OmegaConf

from bacov.utils.tools import freeze_top_level_cfg


class BaseClass:
    """Component configured through OmegaConf, with user values merged over `default_conf`.

    With `freeze_conf` the top level of the defaults is in struct mode and unknown keys raise on merge.
    Nested groups stay open. Subclasses validate in `_assert_configs` and set up state in `_init`.
    """

    freeze_conf = True
    default_conf = {"verbose": 0}

    def __init__(self, conf=None, *args, **kwargs):
        defaults = OmegaConf.create(self.default_conf)
        if self.freeze_conf:
            freeze_top_level_cfg(defaults)
        self.default_conf = defaults
        self.conf = OmegaConf.merge(defaults, self._as_conf(conf))
        self.tstart = None
        self._assert_configs()
        self._init(*args, **kwargs)

    @staticmethod
    def _as_conf(conf):
        if conf is None:
            return OmegaConf.create()
        if isinstance(conf, DictConfig):
            return conf
        return OmegaConf.create(dict(conf))

    def _init(self, *args, **kwargs):
        """To be implemented by the child class."""

    def _assert_configs(self):
        """Raise if the merged conf is invalid."""

    def log(self, *message, level=0, tstart=False, tend=False, **kwargs):
        """Print when conf.verbose >= level.

        tstart starts a timer and leaves the line open; a following tend=True call closes it with the
        elapsed time.
        """
        if self.conf.verbose < level:
            return
        if tend:
            assert not message, "tend=True takes no message"
            assert self.tstart is not None, "log(..., tstart=True) must come first"
            message = (f"{time() - self.tstart:.3f} s",)
        elif tstart:
            self.tstart = time()
        print(*message, end=" " if tstart else "\n", **kwargs)
