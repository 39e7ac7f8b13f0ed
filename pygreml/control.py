"""
Control parameters for GREML fitting.
"""


class GREMLControl:
    """
    Control parameters for variance component estimation.

    Parameters
    ----------
    tolerance : float, default=1e-5
        Convergence tolerance (maximum absolute change in variance components)
    max_iter : int, default=100
        Maximum number of REML iterations
    monitoring : bool, default=False
        Whether to print iteration progress
    bin : str, optional
        Path to an external REML executable. When given, estimation is
        delegated to that program instead of the in-process AI-REML.
    nthreads : int, default=1
        Number of threads handed to the external executable
    wkdir : str, optional
        Working directory for the external executable's files
        (a temporary directory when omitted)
    """

    def __init__(
        self,
        tolerance: float = 1e-5,
        max_iter: int = 100,
        monitoring: bool = False,
        bin: str = None,
        nthreads: int = 1,
        wkdir: str = None
    ):
        self.tolerance = tolerance
        self.max_iter = max_iter
        self.monitoring = monitoring
        self.bin = bin
        self.nthreads = nthreads
        self.wkdir = wkdir

    @property
    def external(self) -> bool:
        return self.bin is not None

    def __repr__(self):
        return (f"GREMLControl(tolerance={self.tolerance}, max_iter={self.max_iter}, "
                f"monitoring={self.monitoring}, bin={self.bin!r}, nthreads={self.nthreads})")
