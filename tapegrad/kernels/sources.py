"""
CUDA C templates rendered by `KernelTemplate`.

Config values appear as macros (``T`` element type, ``ACC`` accumulator type,
``BLOCK_SIZE`` threads per block), so each distinct config compiles once.
"""

from tapegrad.kernels.template import KernelTemplate

MATH_HEADER = "tapegrad_math.cuh"

MATH_HEADER_SOURCE = r"""
#ifndef TAPEGRAD_MATH_CUH
#define TAPEGRAD_MATH_CUH
#define TAPEGRAD_NEG_INF (-1.0/0.0)
#endif
"""

MASKED_FILL_SOURCE = r"""
extern "C" __global__ void masked_fill(
    const T* x, const T* mask, T* out, const T value, const long long n)
{
    long long i = (long long)blockIdx.x * BLOCK_SIZE + threadIdx.x;
    if (i < n) {
        out[i] = mask[i] != (T)0 ? value : x[i];
    }
}
"""

# One block per row. Exponentials are stored in `out` first so that `x` and `out`
# may be the same buffer (in-place softmax).
SOFTMAX_ROWS_SOURCE = r"""
extern "C" __global__ void softmax_rows(const T* x, T* out, const int cols)
{
    __shared__ ACC shm[BLOCK_SIZE];
    const long long offset = (long long)blockIdx.x * cols;
    const T* xr = x + offset;
    T* outr = out + offset;

    ACC m = (ACC)TAPEGRAD_NEG_INF;
    for (int c = threadIdx.x; c < cols; c += BLOCK_SIZE) {
        ACC v = (ACC)xr[c];
        m = v > m ? v : m;
    }
    shm[threadIdx.x] = m;
    __syncthreads();
    for (int s = BLOCK_SIZE / 2; s > 0; s >>= 1) {
        if (threadIdx.x < s && shm[threadIdx.x + s] > shm[threadIdx.x]) {
            shm[threadIdx.x] = shm[threadIdx.x + s];
        }
        __syncthreads();
    }
    m = shm[0];
    __syncthreads();

    ACC sum = 0;
    for (int c = threadIdx.x; c < cols; c += BLOCK_SIZE) {
        ACC e = exp((ACC)xr[c] - m);
        outr[c] = (T)e;
        sum += e;
    }
    shm[threadIdx.x] = sum;
    __syncthreads();
    for (int s = BLOCK_SIZE / 2; s > 0; s >>= 1) {
        if (threadIdx.x < s) {
            shm[threadIdx.x] += shm[threadIdx.x + s];
        }
        __syncthreads();
    }
    sum = shm[0];

    for (int c = threadIdx.x; c < cols; c += BLOCK_SIZE) {
        outr[c] = (T)((ACC)outr[c] / sum);
    }
}
"""


def build_templates():
    """
    Create fresh templates for the GPU backend.

    Returns:
        Dict[str, KernelTemplate]: Templates keyed by kernel name.
    """
    masked_fill = KernelTemplate(MASKED_FILL_SOURCE).add_config_args("T", "BLOCK_SIZE")
    softmax_rows = KernelTemplate(SOFTMAX_ROWS_SOURCE, MATH_HEADER).add_config_args(
        "T", "ACC", "BLOCK_SIZE"
    )
    return {"masked_fill": masked_fill, "softmax_rows": softmax_rows}
