"""Tools package: imports trigger tool registration."""

# Register tools with the global registry on package import; order is the order the model sees
import papergrid.tools.query_posts  # noqa: F401
import papergrid.tools.list_taxonomies  # noqa: F401
import papergrid.tools.search_posts  # noqa: F401
