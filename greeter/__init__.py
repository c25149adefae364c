"""

    greeter
    ~~~~~~~

    Tiny event-driven HTTP server greeting the world.

"""

__version__ = '0.1'
