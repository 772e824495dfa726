"""
ModelFetch 归档层

按清单白名单安全解压模型归档。
"""

from modelfetch.archive.extractor import SecureExtractor

__all__ = ["SecureExtractor"]
