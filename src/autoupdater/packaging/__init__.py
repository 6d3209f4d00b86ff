from autoupdater.packaging.builder import BuildResult, PackageBuilder

__all__ = ["BuildResult", "PackageBuilder"]
