from healthlens.models.analysis_cache import AnalysisCacheEntry

__all__ = ["AnalysisCacheEntry"]
