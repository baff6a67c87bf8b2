from coursegate.catalog.hierarchy import CategoryHierarchyResolver

__all__ = ["CategoryHierarchyResolver"]
