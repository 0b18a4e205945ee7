from .kong_cluster import *
