import unittest

from thiran.config import ThiranConfig
from thiran.domain.errors import ProviderNotFoundError
from thiran.providers.anthropic_provider import AnthropicProvider
from thiran.providers.gemini_provider import GeminiProvider
from thiran.providers.ollama_provider import OllamaProvider
from thiran.providers.openai_compatible import OpenAICompatibleProvider
from thiran.providers.registry import create_provider, get_provider_models, list_providers


class TestProviderRegistry(unittest.TestCase):
    def test_create_each_provider(self):
        expected = {
            "anthropic": AnthropicProvider,
            "openai": OpenAICompatibleProvider,
            "gemini": GeminiProvider,
            "ollama": OllamaProvider,
        }
        for name, cls in expected.items():
            provider = create_provider(ThiranConfig(provider=name, model="custom-model"))
            self.assertIsInstance(provider, cls)
            self.assertEqual(provider.name, name)
            self.assertEqual(provider.default_model, "custom-model")

    def test_provider_name_is_case_insensitive(self):
        self.assertIsInstance(create_provider(ThiranConfig(provider=" Ollama ")), OllamaProvider)

    def test_unknown_provider(self):
        with self.assertRaises(ProviderNotFoundError) as ctx:
            create_provider(ThiranConfig(provider="watson"))
        self.assertIn("Unknown provider: watson", str(ctx.exception))
        self.assertIsInstance(ctx.exception, KeyError)

    def test_catalogue(self):
        self.assertEqual(list_providers(), ["anthropic", "openai", "gemini", "ollama"])
        self.assertTrue(get_provider_models("anthropic"))
        self.assertIn("qwen3:latest", get_provider_models("ollama"))
        self.assertEqual(get_provider_models("watson"), [])


if __name__ == "__main__":
    unittest.main()
