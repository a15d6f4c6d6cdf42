"""
Listing page classification tests
"""

import asyncio

from models import ClassificationResult
from scraper import classify_page, header_fragment

from fakes import FakePage, Listing


def _classify(listing: Listing) -> ClassificationResult:
    page = FakePage()
    page.current = listing
    return asyncio.run(classify_page(page))


class TestHeaderFragment:

    def test_keeps_first_four_words(self):
        assert header_fragment("Wireless Bluetooth Headphones with Noise Cancellation") == (
            "Wireless Bluetooth Headphones with"
        )

    def test_collapses_whitespace(self):
        assert header_fragment("  Kids\tWater \n Bottle   ") == "Kids Water Bottle"

    def test_short_and_empty_titles(self):
        assert header_fragment("Mug") == "Mug"
        assert header_fragment("   ") == ""


class TestClassifyPage:

    def test_marker_image_means_blocked(self):
        result = _classify(Listing(title="Amazon.ca: Shoes", dog=True, product_title="Running Shoes"))
        assert result.is_blocked_page is True
        assert result.page_title == "Amazon.ca: Shoes"

    def test_not_found_title_means_blocked(self):
        result = _classify(Listing(title="Amazon.ca Page Not Found", product_title="Ignored Title Text"))
        assert result.is_blocked_page is True

    def test_live_listing_reads_title(self):
        result = _classify(Listing(
            title="Amazon.ca: Headphones",
            product_title="  Wireless Bluetooth Headphones with Noise Cancellation ",
        ))
        assert result.is_blocked_page is False
        assert result.title_fragment == "Wireless Bluetooth Headphones with"

    def test_missing_title_defaults_to_unknown(self):
        result = _classify(Listing(title="Amazon.ca", product_title=None))
        assert result.is_blocked_page is False
        assert result.title_fragment == "Unknown"

    def test_classification_is_repeatable(self):
        page = FakePage()
        page.current = Listing(title="Amazon.ca: Lamp", product_title="Desk Lamp LED Dimmable Clamp")

        async def twice():
            return await classify_page(page), await classify_page(page)

        first, second = asyncio.run(twice())
        assert first == second
