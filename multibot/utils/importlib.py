import importlib
import importlib.util
import os
import sys
from types import ModuleType


def import_module(path: str, name: str = "multibot_app") -> ModuleType:
    """
    Import an application module either by dotted name or from a file
    path. File modules are registered in sys.modules under `name`.
    """
    if not path.endswith(".py") and not os.path.exists(path):
        return importlib.import_module(path)

    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load module from {path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(name, None)
        raise

    return module
