"""Data extraction module."""

from .templates import TemplateService, validate_values, extractions_to_dataframe
from .data_extractor import DataExtractor, values_to_dict
from .field_recommender import FieldRecommender

__all__ = [
    "TemplateService",
    "validate_values",
    "extractions_to_dataframe",
    "DataExtractor",
    "values_to_dict",
    "FieldRecommender",
]
