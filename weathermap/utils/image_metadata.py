"""Text metadata embedded in the PNG files of a download."""

from weathermap.models.product import Product
from weathermap.models.service_config import ServiceConfig


def product_attribution(service: ServiceConfig, product: Product) -> str:
    """Attribution of a product, falling back to the name of its service."""
    return product.attribution or service.display_name or service.name


def build_png_text(
    service: ServiceConfig,
    product: Product,
    time_token: str | None = None,
    attribution: str | None = None,
) -> dict[str, str]:
    """Build the text chunks written with a composite or legend.

    Uses the registered PNG keywords where one fits, so image viewers show
    them; the data time goes into a "Time" chunk.

    Args:
        service: Service the product came from
        product: Downloaded product
        time_token: TIME value the tiles were requested for
        attribution: Configured attribution replacing the product's own

    Returns:
        Dictionary of PNG text keywords to values
    """
    text = {
        "Title": product.display_name or product.id,
        "Source": service.address,
        "Copyright": attribution or product_attribution(service, product),
    }
    if product.description:
        text["Description"] = product.description
    if time_token:
        text["Time"] = time_token
    return text
