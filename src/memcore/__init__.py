"""
memcore - 个人助理记忆引擎

存储对话事实, 随世界变化进行去重与版本化,
并融合结构化卡片 / 向量 / 词法三路召回回答检索。
"""


def _resolve_version() -> str:
    """
    解析版本号。
    优先级：
      1. pyproject.toml（editable 安装时始终最新）
      2. importlib.metadata（正式 pip install 后可用）
    """
    from pathlib import Path

    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    if pyproject_path.exists():
        try:
            import tomllib
            with open(pyproject_path, "rb") as f:
                return tomllib.load(f)["project"]["version"]
        except (OSError, KeyError, ValueError):
            pass

    try:
        from importlib.metadata import PackageNotFoundError, version
        return version("memcore")
    except PackageNotFoundError:
        pass

    return "0.0.0-dev"


__version__ = _resolve_version()
