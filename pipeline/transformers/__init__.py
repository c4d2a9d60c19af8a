from pipeline.transformers.normalizer import EntityNormalizer

__all__ = ["EntityNormalizer"]
