"""Template bundles shipped with fuoco, one directory per provider."""
