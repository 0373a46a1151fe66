"""OpenVibe relay: pairs one device (slave) with many controllers (masters).

A slave connects to ``/register?id=<device>``; masters connect to
``/pair?id=<device>``.  Master frames are unicast to the slave, slave frames
are broadcast to every paired master.

Quickstart::

    python -m openvibe.server
    # or
    uvicorn openvibe.server:app --host 0.0.0.0 --port 3000
"""

__version__ = "0.1.0"
