import unittest

import numpy as np

from tapegrad import (
    Engine,
    float32,
    tensor,
    max,
    BackendNotFoundError,
    KernelAlreadyRegisteredError,
    KernelNotFoundError,
    TensorDisposedError,
)
from tapegrad.backends.backend_dispatcher import BackendDispatcher
from tapegrad.backends.cpu import CPUBackend

from engine_case import EngineTestCase


class MirrorBackend(CPUBackend):
    """CPU storage under another name, so kernels are looked up separately."""

    name = "mirror"


def _register_mirror_kernels():
    dispatcher = BackendDispatcher.instance()
    for kernel_name in dispatcher.kernel_names("cpu"):
        if not dispatcher.has_kernel(MirrorBackend.name, kernel_name):
            dispatcher.register_backend_function(MirrorBackend.name, kernel_name)(
                dispatcher.dispatch("cpu", kernel_name)
            )


_register_mirror_kernels()


class TestBackendDispatcher(EngineTestCase):
    def test_duplicate_registration_raises(self):
        dispatcher = BackendDispatcher.instance()
        with self.assertRaises(KernelAlreadyRegisteredError) as ctx:
            dispatcher.register_backend_function("cpu", "Max")(lambda backend, inputs, config: None)
        self.assertEqual(ctx.exception.backend, "cpu")
        self.assertEqual(dispatcher.dispatch("cpu", "Max").__name__, "cpu_max")

    def test_unregister_kernel(self):
        dispatcher = BackendDispatcher.instance()

        @dispatcher.register_backend_function("scratch", "Max")
        def scratch_max(backend, inputs, config):
            return None

        self.assertIn("scratch", dispatcher.backend_names())
        self.assertEqual(dispatcher.kernel_names("scratch"), ["Max"])
        dispatcher.unregister_backend_function("scratch", "Max")
        self.assertFalse(dispatcher.has_kernel("scratch", "Max"))
        self.assertNotIn("scratch", dispatcher.backend_names())
        with self.assertRaises(KernelNotFoundError):
            dispatcher.unregister_backend_function("scratch", "Max")

    def test_unknown_kernel_raises(self):
        with self.assertRaises(KernelNotFoundError) as ctx:
            BackendDispatcher.instance().dispatch("cpu", "Conv2D")
        self.assertEqual(ctx.exception.kernel_name, "Conv2D")
        self.assertEqual(ctx.exception.backend, "cpu")

    def test_cpu_kernels_registered(self):
        dispatcher = BackendDispatcher.instance()
        for kernel_name in ["Max", "Reshape", "Transpose", "Add", "Multiply", "Equal", "Sum", "Cast", "Fill"]:
            self.assertTrue(dispatcher.has_kernel("cpu", kernel_name), kernel_name)
        self.assertTrue(self.engine.backend.has_kernel("Max"))


class TestBackendSelection(EngineTestCase):
    def test_cpu_is_the_default_backend(self):
        self.assertEqual(self.engine.backend_names(), ["cpu"])
        self.assertEqual(self.engine.backend_name, "cpu")
        self.assertIsInstance(self.engine.backend, CPUBackend)

    def test_highest_priority_backend_wins(self):
        self.engine.register_backend(MirrorBackend.name, MirrorBackend, priority=2)
        self.assertEqual(self.engine.backend_name, "mirror")
        with tensor([[1.0, 4.0], [3.0, 2.0]], float32) as x, max(x, 0) as y:
            self.assertIsInstance(y.backend, MirrorBackend)
            np.testing.assert_array_equal(y.numpy(), [3.0, 4.0])

    def test_register_twice_keeps_first_factory(self):
        self.assertFalse(self.engine.register_backend("cpu", MirrorBackend))
        self.assertIsInstance(self.engine.backend, CPUBackend)
        self.assertNotIsInstance(self.engine.backend, MirrorBackend)

    def test_tensors_are_readable_across_backends(self):
        self.engine.register_backend(MirrorBackend.name, MirrorBackend, priority=0)
        self.engine.set_backend("cpu")
        x = tensor([[1.0, 4.0], [3.0, 2.0]], float32)

        self.engine.set_backend("mirror")
        y = max(x, 1)
        r = x.reshape((4,))
        self.assertIsInstance(y.backend, MirrorBackend)
        self.assertIsInstance(r.backend, MirrorBackend)
        np.testing.assert_array_equal(y.numpy(), [4.0, 3.0])
        np.testing.assert_array_equal(r.numpy(), [1.0, 4.0, 3.0, 2.0])

        self.engine.dispose([x, y, r])
        self.assertNoLiveTensors()

    def test_unknown_backend_raises(self):
        with self.assertRaises(BackendNotFoundError):
            self.engine.set_backend("tpu")
        with self.assertRaises(BackendNotFoundError):
            self.engine.remove_backend("tpu")

    def test_failing_backend_factory(self):
        def broken(engine):
            raise OSError("driver not found")

        self.engine.register_backend("broken", broken, priority=5)
        self.assertIsNone(self.engine.find_backend("broken"))
        with self.assertRaises(BackendNotFoundError):
            self.engine.set_backend("broken")
        self.assertEqual(self.engine.backend_name, "cpu")

    def test_remove_backend(self):
        self.engine.register_backend(MirrorBackend.name, MirrorBackend, priority=2)
        self.assertEqual(self.engine.backend_name, "mirror")
        self.engine.remove_backend("mirror")
        self.assertEqual(self.engine.backend_names(), ["cpu"])
        self.assertEqual(self.engine.backend_name, "cpu")

    def test_remove_backend_releases_its_tensors(self):
        x = tensor([1.0, 2.0], float32)
        r = x.reshape((2, 1))
        self.engine.remove_backend("cpu")

        self.assertTrue(x.is_disposed)
        self.assertTrue(r.is_disposed)
        with self.assertRaises(TensorDisposedError):
            x.numpy()
        with self.assertRaises(TensorDisposedError):
            max(r)
        x.dispose()
        self.assertEqual(self.engine.memory()["num_tensors"], 0)

    def test_remove_backend_during_recording(self):
        self.engine.register_backend(MirrorBackend.name, MirrorBackend, priority=0)
        x = tensor([3.0, 1.0], float32)
        with self.engine.record() as tape:
            self.engine.set_backend("mirror")
            y = max(x)
            self.assertEqual(len(tape), 1)
            self.engine.remove_backend("mirror")
            self.assertTrue(y.is_disposed)
            self.assertEqual(x.ref_count, 2)
        self.assertEqual(x.ref_count, 1)
        x.dispose()
        self.assertNoLiveTensors()

    def test_engines_do_not_share_backends(self):
        other = Engine()
        with other.use():
            t = tensor([1.0], float32)
            self.assertIs(t.backend.engine, other)
        self.assertEqual(self.engine.memory()["num_tensors"], 0)
        self.assertEqual(other.memory()["num_tensors"], 1)
        t.dispose()
        self.assertEqual(other.memory()["num_tensors"], 0)


if __name__ == "__main__":
    unittest.main()
