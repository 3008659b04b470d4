import unittest

import numpy as np

from tapegrad import float32, int64, tensor, reshape, max, TensorDisposedError, RefCountError
from tapegrad.errors import InvalidDataTypeError

from engine_case import EngineTestCase


class TestTensorHandles(EngineTestCase):
    def test_new_tensor_has_one_reference(self):
        t = tensor([1.0, 2.0, 3.0], float32)
        self.assertEqual(t.ref_count, 1)
        self.assertEqual(t.shape, (3,))
        self.assertIs(t.dtype, float32)
        self.assertEqual(t.rank, 1)
        self.assertEqual(t.size, 3)
        self.assertEqual(self.engine.memory()["num_tensors"], 1)
        self.assertEqual(self.engine.memory()["num_bytes"], 12)
        t.dispose()
        self.assertNoLiveTensors()

    def test_dtype_inferred_from_data(self):
        with tensor([1, 2, 3]) as t:
            self.assertIs(t.dtype, int64)

    def test_dispose_twice_is_a_no_op(self):
        t = tensor([1.0, 2.0], float32)
        t.dispose()
        self.assertTrue(t.is_disposed)
        t.dispose()
        self.assertTrue(t.is_disposed)
        self.assertNoLiveTensors()

    def test_read_after_dispose_raises(self):
        t = tensor([1.0, 2.0], float32)
        t.dispose()
        with self.assertRaises(TensorDisposedError):
            t.numpy()
        with self.assertRaises(TensorDisposedError):
            max(t)
        self.assertIn("disposed", repr(t))

    def test_dec_ref_below_zero_raises(self):
        t = tensor([1.0], float32)
        t.dispose()
        with self.assertRaises(RefCountError):
            self.engine.dec_ref(t)

    def test_numpy_returns_a_copy(self):
        with tensor([[1.0, 2.0]], float32) as t:
            array = t.numpy()
            array[0, 0] = 100.0
            np.testing.assert_array_equal(t.numpy(), [[1.0, 2.0]])
            self.assertEqual(t.numpy().dtype, np.float32)

    def test_reshape_shares_storage(self):
        t = tensor(np.arange(6, dtype=np.float32))
        r = reshape(t, (2, 3))
        self.assertNotEqual(r.id, t.id)
        self.assertEqual(r.data_id, t.data_id)
        self.assertEqual(self.engine.memory()["num_tensors"], 2)
        self.assertEqual(self.engine.memory()["num_data_buffers"], 1)

        t.dispose()
        np.testing.assert_array_equal(r.numpy(), np.arange(6).reshape(2, 3))
        self.assertEqual(self.engine.memory()["num_data_buffers"], 1)
        r.dispose()
        self.assertNoLiveTensors()

    def test_reshape_infers_unknown_dimension(self):
        with tensor(np.zeros((2, 6), np.float32)) as t, t.reshape((3, -1)) as r:
            self.assertEqual(r.shape, (3, 4))
        with tensor(np.zeros((2, 6), np.float32)) as t:
            with self.assertRaises(ValueError):
                t.reshape((5, -1))

    def test_tensor_rejects_tensor_input(self):
        with tensor([1.0], float32) as t:
            with self.assertRaises(InvalidDataTypeError):
                tensor(t)

    def test_item(self):
        with tensor([[4.5]], float32) as t:
            self.assertEqual(t.item(), 4.5)


class TestTidy(EngineTestCase):
    def test_tidy_disposes_intermediates(self):
        x = tensor([[1.0, 5.0], [3.0, 2.0]], float32)

        def f():
            doubled = x * 2
            return max(doubled, 1)

        y = self.engine.tidy(f)
        np.testing.assert_array_equal(y.numpy(), [10.0, 6.0])
        self.assertEqual(self.engine.memory()["num_tensors"], 2)
        x.dispose()
        y.dispose()
        self.assertNoLiveTensors()

    def test_tidy_keeps_tensors_marked_with_keep(self):
        x = tensor([1.0, 2.0], float32)

        holder = []

        def f():
            holder.append(self.engine.keep(x + 1))
            x * 3

        self.assertIsNone(self.engine.tidy(f))
        kept = holder[0]
        self.assertEqual(self.engine.memory()["num_tensors"], 2)
        np.testing.assert_array_equal(kept.numpy(), [2.0, 3.0])
        self.engine.dispose([x, kept])
        self.assertNoLiveTensors()

    def test_nested_tidy_result_escapes_to_parent(self):
        x = tensor([1.0, 2.0, 3.0], float32)

        def inner():
            return x * 2

        def outer():
            doubled = self.engine.tidy(inner)
            return max(doubled)

        y = self.engine.tidy(outer)
        self.assertEqual(y.item(), 6.0)
        self.assertEqual(self.engine.memory()["num_tensors"], 2)
        self.engine.dispose({"x": x, "y": y})
        self.assertNoLiveTensors()

    def test_scope_context_manager(self):
        x = tensor([1.0, 2.0], float32)
        with self.engine.scope("temporaries"):
            x + x
            x * x
        self.assertEqual(self.engine.memory()["num_tensors"], 1)
        x.dispose()
        self.assertNoLiveTensors()


if __name__ == "__main__":
    unittest.main()
