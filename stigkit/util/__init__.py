import importlib as _importlib
import pkgutil as _pkgutil
import inspect as _inspect

__all__ = []


def __dir__():
    return __all__


# flatten all util submodules into one namespace, so callers can just
# 'from stigkit import util' and use util.log(), util.ToolRunner, etc.
# (function to avoid polluting global namespace with extra variables)
def _import_submodules():
    for info in _pkgutil.iter_modules(__spec__.submodule_search_locations):
        mod = _importlib.import_module(f'.{info.name}', __name__)

        if hasattr(mod, '__all__'):
            keys = mod.__all__
        else:
            keys = (x for x in dir(mod) if not x.startswith('_'))

        for key in keys:
            attr = getattr(mod, key)
            # skip anything imported into the submodule from elsewhere
            # (stdlib functions, classes of other util modules)
            if getattr(attr, '__module__', mod.__name__) != mod.__name__:
                continue
            if _inspect.ismodule(attr):
                continue
            if key in __all__:
                raise AssertionError(f"util name '{key}' defined in more than one submodule")
            globals()[key] = attr
            __all__.append(key)


_import_submodules()
