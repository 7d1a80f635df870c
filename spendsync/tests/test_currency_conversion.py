import unittest
from decimal import Decimal

from spendsync.currency_conversion import (
    CompositeRateProvider,
    RateProviderUnavailable,
    StaticRateProvider,
    convert_minor_units,
    format_amount,
    get_currency_metadata,
    validate_supported_currency,
)


class CountingProvider:
    def __init__(self, inner) -> None:
        self.inner = inner
        self.calls = []

    def get_rate(self, source: str, target: str) -> Decimal:
        self.calls.append((source, target))
        return self.inner.get_rate(source, target)


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = StaticRateProvider(
            rates={
                "USD": Decimal("1"),
                "EUR": Decimal("2"),
                "JPY": Decimal("4"),
            }
        )

    def test_same_currency_returns_original_amount(self) -> None:
        counting = CountingProvider(self.provider)

        result = convert_minor_units(1250, "USD", "USD", rate_provider=counting)

        self.assertEqual(result.converted_amount, 1250)
        self.assertEqual(result.rate, "1.0")
        self.assertEqual(counting.calls, [])

    def test_conversion_uses_usd_base_rates(self) -> None:
        result = convert_minor_units(1250, "USD", "EUR", rate_provider=self.provider)

        self.assertEqual(result.converted_amount, 2500)
        self.assertEqual(Decimal(result.rate), Decimal("2"))

    def test_scales_by_each_currency_decimals(self) -> None:
        # 10.00 EUR is 20 JPY, and yen have no minor unit.
        result = convert_minor_units(1000, "EUR", "JPY", rate_provider=self.provider)

        self.assertEqual(result.converted_amount, 20)

        back = convert_minor_units(20, "JPY", "EUR", rate_provider=self.provider)
        self.assertEqual(back.converted_amount, 1000)

    def test_rounds_half_up(self) -> None:
        provider = StaticRateProvider(rates={"USD": Decimal("1"), "EUR": Decimal("2"), "JPY": Decimal("50")})

        result = convert_minor_units(2, "EUR", "JPY", rate_provider=provider)

        self.assertEqual(result.converted_amount, 1)

    def test_calls_provider_once_per_conversion(self) -> None:
        counting = CountingProvider(self.provider)

        convert_minor_units(1000, "EUR", "USD", rate_provider=counting)

        self.assertEqual(counting.calls, [("EUR", "USD")])

    def test_normalizes_currency_codes(self) -> None:
        result = convert_minor_units(600, " eur ", "usd", rate_provider=self.provider)

        self.assertEqual(result.converted_amount, 300)

    def test_missing_currency_raises(self) -> None:
        with self.assertRaises(ValueError):
            convert_minor_units(500, "USD", "CAD", rate_provider=self.provider)

    def test_falls_back_when_live_provider_unavailable(self) -> None:
        class UnavailableProvider:
            def get_rate(self, source: str, target: str) -> Decimal:
                raise RateProviderUnavailable("Down")

        provider = CompositeRateProvider(
            primary=UnavailableProvider(),
            fallback=self.provider,
        )

        result = convert_minor_units(1000, "EUR", "JPY", rate_provider=provider)

        self.assertEqual(result.converted_amount, 20)

    def test_validate_supported_currency(self) -> None:
        self.assertEqual(validate_supported_currency(" cad "), "CAD")
        with self.assertRaises(ValueError):
            validate_supported_currency("NZD")
        with self.assertRaises(ValueError):
            validate_supported_currency("dollars")

    def test_unknown_metadata_falls_back_to_usd(self) -> None:
        self.assertEqual(get_currency_metadata("XYZ").code, "USD")
        self.assertEqual(get_currency_metadata("jpy").decimals, 0)

    def test_format_amount(self) -> None:
        self.assertEqual(format_amount(123456, "USD"), "$1,234.56")
        self.assertEqual(format_amount(1500, "JPY"), "¥1,500")
        self.assertEqual(format_amount(-500, "EUR"), "-€5.00")


if __name__ == "__main__":
    unittest.main()
