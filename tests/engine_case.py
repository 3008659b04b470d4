from unittest import TestCase

from tapegrad import Engine
from tapegrad.environment import Environment


class EngineTestCase(TestCase):
    """Runs every test against a fresh engine installed for the current thread."""

    def setUp(self):
        self.engine = Engine()
        self._use = self.engine.use()
        self._use.__enter__()

    def tearDown(self):
        self._use.__exit__(None, None, None)
        self.engine.reset()
        Environment.instance().reset()

    def assertNoLiveTensors(self):
        memory = self.engine.memory()
        self.assertEqual(memory["num_tensors"], 0)
        self.assertEqual(memory["num_data_buffers"], 0)
        self.assertEqual(memory["num_bytes"], 0)
