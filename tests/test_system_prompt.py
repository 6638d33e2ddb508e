import unittest

from agent_turn_loop.system_prompt import build_system_prompt


class BuildSystemPromptTests(unittest.TestCase):
    def test_base_prompt(self) -> None:
        prompt = build_system_prompt()
        self.assertIn("helpful AI assistant", prompt)
        self.assertNotIn("working directory", prompt)

    def test_tools_and_working_directory(self) -> None:
        prompt = build_system_prompt("/work", ["write_file", "bash"])
        self.assertIn("Available tools: bash, write_file.", prompt)
        self.assertIn("The working directory is: /work", prompt)


if __name__ == "__main__":
    unittest.main()
