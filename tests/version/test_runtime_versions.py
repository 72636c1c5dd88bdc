# tests/version/test_runtime_versions.py
def test_runtime_versions():
    import sys, inspect
    import pymc as pm, arviz as az, xarray as xr

    print("\nPYTHON:", sys.executable)
    print("PYMC:", pm.__version__)
    print("ARVIZ:", az.__version__)
    print("XARRAY:", xr.__version__)
    print("Prior predictive signature:", inspect.signature(pm.sample_prior_predictive))

    assert int(az.__version__.split(".")[0]) == 0
    assert "draws" in inspect.signature(pm.sample_prior_predictive).parameters
    assert "h5netcdf" in xr.backends.list_engines()
