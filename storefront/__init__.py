"""FeelItBuy storefront and admin API."""
