from pathlib import Path

from omegaconf import DictConfig, ListConfig, OmegaConf

CONFIG_DIR = Path(__file__).parent.parent / "configs"


def _load(path):
    path = Path(path)
    return _resolve_defaults(OmegaConf.load(path), path.parent)


def _resolve_defaults(conf, parent_dir):
    """Merge the files listed under `defaults:` beneath conf.

    A plain entry names a sibling file merged at the root. A `group@target: name` entry loads
    `group/name.yaml` and merges it at `target`, or at the root when target is ".".
    """
    for entry in conf.pop("defaults", []):
        if isinstance(entry, str):
            conf = OmegaConf.merge(_load(parent_dir / f"{entry}.yaml"), conf)
            continue
        if not isinstance(entry, (dict, DictConfig)):
            raise TypeError(f"Expected string or dict in defaults, got {type(entry).__name__}")
        for key, name in entry.items():
            group, sep, target = str(key).partition("@")
            if not (sep and group and target):
                raise ValueError(f"Defaults entry must read 'group@target: name', got {key}")
            group_conf = _load(parent_dir / group / f"{name}.yaml")
            if target == ".":
                conf = OmegaConf.merge(group_conf, conf)
                continue
            override = OmegaConf.select(conf, target)
            OmegaConf.update(conf, target, group_conf if override is None else OmegaConf.merge(group_conf, override))
    return conf


def load_cfg(path, return_name=True):
    """Load a YAML config, resolving nested defaults relative to each file's directory."""
    conf = _load(path)
    if return_name:
        conf.name = Path(path).stem
    return conf


def load_preset(group, name, return_name=False):
    """Load one of the packaged presets, e.g. load_preset("covariance", "points")."""
    path = CONFIG_DIR / group / f"{name}.yaml"
    if not path.exists():
        raise FileNotFoundError(f"No {group} preset named '{name}' in {CONFIG_DIR / group}")
    return load_cfg(path, return_name=return_name)


def summarize_cfg(config):
    """Render the configuration as an indented tree."""
    lines = []

    def summarize(node, depth=0):
        indent = "  " * depth
        if isinstance(node, (dict, DictConfig)):
            for key, value in node.items():
                lines.append(f"{indent}{key}:")
                summarize(value, depth + 1)
        elif isinstance(node, (list, ListConfig)):
            for i, item in enumerate(node):
                lines.append(f"{indent}- [{i}]")
                summarize(item, depth + 1)
        else:
            lines.append(f"{indent}{node}")

    summarize(config)
    return "\n".join(lines)


def freeze_top_level_cfg(conf: DictConfig):
    """Struct mode on the top level only; nested groups keep accepting new keys."""
    OmegaConf.set_struct(conf, True)
    for key in conf:
        group = conf[key]
        if isinstance(group, DictConfig):
            OmegaConf.set_struct(group, False)
    return conf
