import importlib.resources as pkg_resources


def get_package_directory():
    return pkg_resources.files("toolwire")


__all__ = ["get_package_directory"]
